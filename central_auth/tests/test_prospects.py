"""
Prospect and Registration Journey Endpoint Tests
"""

import pytest

from central_auth.auth.journeys import JourneyTracker


class TestCreateProspect:
    """Test suite for POST /prospects"""

    def test_create(self, client, datastore):
        response = client.post("/prospects", json={
            "email": " Invitee@Example.com ",
            "entry_route": "partner-invite",
            "created_by": "ops@example.com",
        })

        assert response.status_code == 201
        body = response.json()
        assert body["email"] == "invitee@example.com"
        assert body["entry_route"] == "partner-invite"
        assert body["created_by"] == "ops@example.com"
        assert body["person_uuid"] is None
        assert body["prospect_id"] == body["id"] == datastore.prospects["invitee@example.com"].prospect_id
        assert body["created_at"]

    def test_defaults(self, client):
        body = client.post("/prospects", json={"email": "invitee@example.com"}).json()

        assert body["entry_route"] == "invite"
        assert body["created_by"] == "system"

    @pytest.mark.parametrize("payload", [{}, {"email": ""}, {"email": "   "}])
    def test_email_required(self, client, payload):
        response = client.post("/prospects", json=payload)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_datastore_not_configured(self, client, datastore):
        datastore._configured = False

        response = client.post("/prospects", json={"email": "invitee@example.com"})

        assert response.status_code == 503
        assert response.json()["error"] == "service_unavailable"

    def test_datastore_failure(self, client, datastore):
        datastore.failing = True

        response = client.post("/prospects", json={"email": "invitee@example.com"})

        assert response.status_code == 500
        assert response.json()["error"] == "server_error"


class TestCreateRegistrationJourney:
    """Test suite for POST /registration-journeys"""

    @pytest.fixture
    def prospect_id(self, client):
        return client.post("/prospects", json={"email": "invitee@example.com"}).json()["prospect_id"]

    def test_create(self, client, prospect_id):
        response = client.post("/registration-journeys", json={
            "prospect_id": prospect_id,
            "step_name": "OTP_SENT",
            "status": "COMPLETED",
            "metadata": {"source": "invite-batch-7"},
        })

        assert response.status_code == 201
        body = response.json()
        assert body["journey_id"] == body["id"]
        assert body["prospect_id"] == prospect_id
        assert body["current_step_id"] == 20
        assert body["status"] == "COMPLETED"
        assert body["metadata"] == {"source": "invite-batch-7"}

    def test_defaults(self, client, prospect_id):
        body = client.post("/registration-journeys", json={"prospect_id": prospect_id}).json()

        assert body["status"] == "IN_PROGRESS"

    @pytest.mark.parametrize("payload", [{}, {"prospect_id": 0}, {"prospect_id": -3}, {"prospect_id": "abc"}])
    def test_invalid_prospect_id(self, client, payload):
        response = client.post("/registration-journeys", json=payload)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unknown_prospect(self, client):
        response = client.post("/registration-journeys", json={"prospect_id": 999})

        assert response.status_code == 500
        assert response.json()["error"] == "create_failed"

    def test_datastore_not_configured(self, client, datastore):
        datastore._configured = False

        response = client.post("/registration-journeys", json={"prospect_id": 1})

        assert response.status_code == 503


class TestLinkPerson:
    """Test suite for attaching a provisioned person to a prospect"""

    @pytest.mark.asyncio
    async def test_updates_existing_prospect_only(self, datastore):
        tracker = JourneyTracker(datastore)
        await datastore.create_prospect("ada@example.com", "invite", "admin")

        await tracker.link_person("ada@example.com", "person-1")
        await tracker.link_person("nobody@example.com", "person-2")

        prospect = datastore.prospects["ada@example.com"]
        assert prospect.person_uuid == "person-1"
        assert prospect.entry_route == "invite"
        assert prospect.created_by == "admin"
        assert "nobody@example.com" not in datastore.prospects
