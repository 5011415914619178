"""Datastore repositories for people, persona assignments and prospects."""

import json
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from sqlalchemy import text

from central_auth.db.client import Database
from central_auth.db.models import (
    DatastoreClaims,
    PersonaAssignment,
    Prospect,
    RegistrationJourney,
)

logger = logging.getLogger(__name__)


# Persona code -> application slugs granted to a newly provisioned person.
PERSONA_APP_SLUGS: Dict[str, List[str]] = {
    "P1001": ["A1001", "A1002"],           # Artist: Mobile
    "P1002": ["A1003", "A1004"],           # Manager: Platform & Key
    "P1003": ["A1003", "A1005"],           # Publicist: Platform & Pulse
    "P1004": ["A1003", "A1006", "A1001"],  # Producer: Platform, Aincore, App
}

DEFAULT_PERSONA = "P1002"

CREATED_BY = "central-auth"


def normalize_persona_code(role: Optional[str]) -> str:
    """Known persona code for a role hint, else DEFAULT_PERSONA."""
    if role and isinstance(role, str):
        code = role.strip().upper()
        if code in PERSONA_APP_SLUGS:
            return code
    return DEFAULT_PERSONA


def new_id() -> str:
    """32-character hex UUID used for person and assignment ids."""
    return uuid.uuid4().hex


# =============================================================================
# SQL
# =============================================================================

SQL_CLAIMS_BY_EMAIL = """
SELECT p.person_id, p.primary_email, p.display_name, p.user_status,
       pa.app_slug, pa.persona_code, per.persona_name
FROM subject.person p
INNER JOIN subject.persona_assignment pa ON p.person_id = pa.person_id
JOIN subject.personas per ON pa.persona_code = per.persona_id
WHERE p.primary_email = :email
"""

SQL_INSERT_PERSON = """
INSERT INTO subject.person
    (person_id, entra_id, primary_email, display_name, user_status, created_from_source, created_at, updated_at)
VALUES (:person_id, :entra_id, :email, :display_name, 'Active', :created_by, now(), now())
ON CONFLICT (entra_id) DO NOTHING
RETURNING person_id
"""

SQL_INSERT_PERSONA_ASSIGNMENT = """
INSERT INTO subject.persona_assignment
    (assignment_id, person_id, persona_code, app_slug, created_at, created_by)
VALUES (:assignment_id, :person_id, :persona_code, :app_slug, now(), :created_by)
"""

SQL_SELECT_PROSPECT = """
SELECT * FROM subject.prospects
WHERE email = :email
"""

SQL_UPSERT_PROSPECT = """
INSERT INTO subject.prospects (email, entry_route, person_uuid, created_by)
VALUES (:email, :entry_route, CAST(:person_uuid AS uuid), :created_by)
ON CONFLICT (email) DO UPDATE SET
    entry_route = EXCLUDED.entry_route,
    person_uuid = EXCLUDED.person_uuid,
    created_by = EXCLUDED.created_by,
    updated_at = now()
RETURNING *
"""

SQL_UPDATE_PROSPECT = """
UPDATE subject.prospects
SET
    entry_route = COALESCE(:entry_route, entry_route),
    person_uuid = CAST(:person_uuid AS uuid),
    created_by = COALESCE(:created_by, created_by),
    updated_at = now()
WHERE email = :email
RETURNING *
"""

SQL_INSERT_JOURNEY_BY_NAME = """
INSERT INTO subject.registration_journeys (prospect_id, current_step_id, status, metadata)
VALUES (
    :prospect_id,
    (SELECT step_id FROM subject.workflow_steps WHERE step_name = :step_name),
    :status,
    :metadata
)
RETURNING *
"""

SQL_INSERT_JOURNEY_BY_STEP_ID = """
INSERT INTO subject.registration_journeys (prospect_id, current_step_id, status, metadata)
VALUES (:prospect_id, :step_id, :status, :metadata)
RETURNING *
"""

SQL_LATEST_JOURNEY = """
SELECT * FROM subject.registration_journeys
WHERE prospect_id = :prospect_id
ORDER BY started_at DESC NULLS LAST
LIMIT 1
"""

SQL_STEP_NAME = """
SELECT step_name FROM subject.workflow_steps
WHERE sequence_order = :step_id
"""


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class Datastore(Protocol):
    """Lookup and insert interface used by the authentication flows."""

    @property
    def configured(self) -> bool:
        ...

    async def get_claims_by_email(self, email: str) -> Optional[DatastoreClaims]:
        """Person and persona assignments for a primary email, or None."""
        ...

    async def provision_person(
        self,
        idp_subject: str,
        email: str,
        name: str,
        role_hint: Optional[str] = None,
    ) -> Optional[str]:
        """Create a person with default assignments. Returns the new person id, or None if it existed."""
        ...

    async def get_prospect_by_email(self, email: str) -> Optional[Prospect]:
        ...

    async def create_prospect(
        self,
        email: str,
        entry_route: Optional[str] = "invite",
        created_by: Optional[str] = "system",
        person_uuid: Optional[str] = None,
        update_only: bool = False,
    ) -> Optional[Prospect]:
        ...

    async def create_journey(
        self,
        prospect_id: int,
        step_name: str = "OTP_VERIFICATION",
        status: str = "IN_PROGRESS",
        metadata: Any = None,
    ) -> Optional[RegistrationJourney]:
        ...

    async def record_journey_step(self, prospect_id: int, step_id: int, status: str = "COMPLETED") -> Optional[RegistrationJourney]:
        ...

    async def latest_journey(self, prospect_id: int) -> Optional[RegistrationJourney]:
        ...

    async def step_name(self, step_id: int) -> Optional[str]:
        ...


# =============================================================================
# PostgreSQL Implementation
# =============================================================================

def _prospect(row: Optional[Mapping[str, Any]]) -> Optional[Prospect]:
    if not row:
        return None
    prospect_id = row.get("prospect_id") or row.get("id")
    return Prospect(
        prospect_id=int(prospect_id),
        email=row["email"],
        entry_route=row.get("entry_route"),
        person_uuid=str(row["person_uuid"]) if row.get("person_uuid") else None,
        created_by=row.get("created_by"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _journey(row: Optional[Mapping[str, Any]]) -> Optional[RegistrationJourney]:
    if not row:
        return None
    return RegistrationJourney(
        journey_id=int(row.get("journey_id") or row.get("id")),
        prospect_id=int(row["prospect_id"]),
        current_step_id=row.get("current_step_id"),
        status=row.get("status"),
        metadata=row.get("metadata"),
        started_at=row.get("started_at"),
        updated_at=row.get("updated_at"),
    )


class PostgresDatastore:
    """
    Datastore backed by the `subject` schema.

    Every method is a no-op returning None when no database is configured.
    Query failures raise DatastoreError.
    """

    def __init__(self, database: Database):
        self.database = database

    @property
    def configured(self) -> bool:
        return self.database.configured

    async def get_claims_by_email(self, email: str) -> Optional[DatastoreClaims]:
        if not self.configured or not email:
            return None

        rows = await self.database.fetch_all(SQL_CLAIMS_BY_EMAIL, {"email": email})
        if not rows:
            return None

        first = rows[0]
        return DatastoreClaims(
            person_id=str(first["person_id"]),
            status=first.get("user_status"),
            email=first.get("primary_email"),
            display_name=first.get("display_name"),
            assignments=[
                PersonaAssignment(
                    app_slug=row["app_slug"],
                    persona_code=row["persona_code"],
                    persona_name=row["persona_name"],
                )
                for row in rows
            ],
        )

    async def provision_person(
        self,
        idp_subject: str,
        email: str,
        name: str,
        role_hint: Optional[str] = None,
    ) -> Optional[str]:
        if not self.configured:
            logger.debug("provision_person skipped: DATABASE_URL not set")
            return None

        persona_code = normalize_persona_code(role_hint)

        # Person and assignments commit together so a re-query sees both.
        async with self.database.transaction() as session:
            result = await session.execute(text(SQL_INSERT_PERSON), {
                "person_id": new_id(),
                "entra_id": idp_subject,
                "email": email,
                "display_name": name or email,
                "created_by": CREATED_BY,
            })
            inserted = result.first()
            if inserted is None:
                logger.info("Person already exists for identity provider subject", extra={"entra_id": idp_subject})
                return None

            person_id = str(inserted[0])
            await session.execute(text(SQL_INSERT_PERSONA_ASSIGNMENT), [
                {
                    "assignment_id": new_id(),
                    "person_id": person_id,
                    "persona_code": persona_code,
                    "app_slug": slug,
                    "created_by": CREATED_BY,
                }
                for slug in PERSONA_APP_SLUGS[persona_code]
            ])

        logger.info(
            f"Provisioned person {person_id} with persona {persona_code}",
            extra={"person_id": person_id, "persona_code": persona_code},
        )
        return person_id

    async def get_prospect_by_email(self, email: str) -> Optional[Prospect]:
        if not self.configured:
            return None
        row = await self.database.fetch_one(SQL_SELECT_PROSPECT, {"email": email.strip().lower()})
        return _prospect(row)

    async def create_prospect(
        self,
        email: str,
        entry_route: Optional[str] = "invite",
        created_by: Optional[str] = "system",
        person_uuid: Optional[str] = None,
        update_only: bool = False,
    ) -> Optional[Prospect]:
        """
        Insert or update a prospect by email.

        update_only updates an existing row and returns None when there is
        none.
        """
        if not self.configured:
            return None

        params = {
            "email": email.strip().lower(),
            "entry_route": entry_route,
            "created_by": created_by,
            "person_uuid": (person_uuid or "").strip() or None,
        }
        if update_only:
            row = await self.database.fetch_one(SQL_UPDATE_PROSPECT, params)
        else:
            row = await self.database.fetch_one(SQL_UPSERT_PROSPECT, params)
        return _prospect(row)

    async def create_journey(
        self,
        prospect_id: int,
        step_name: str = "OTP_VERIFICATION",
        status: str = "IN_PROGRESS",
        metadata: Any = None,
    ) -> Optional[RegistrationJourney]:
        if not self.configured:
            return None
        row = await self.database.fetch_one(SQL_INSERT_JOURNEY_BY_NAME, {
            "prospect_id": prospect_id,
            "step_name": step_name,
            "status": status,
            "metadata": json.dumps(metadata) if metadata is not None else None,
        })
        return _journey(row)

    async def record_journey_step(self, prospect_id: int, step_id: int, status: str = "COMPLETED") -> Optional[RegistrationJourney]:
        if not self.configured:
            return None
        row = await self.database.fetch_one(SQL_INSERT_JOURNEY_BY_STEP_ID, {
            "prospect_id": prospect_id,
            "step_id": step_id,
            "status": status,
            "metadata": None,
        })
        return _journey(row)

    async def latest_journey(self, prospect_id: int) -> Optional[RegistrationJourney]:
        if not self.configured:
            return None
        row = await self.database.fetch_one(SQL_LATEST_JOURNEY, {"prospect_id": prospect_id})
        return _journey(row)

    async def step_name(self, step_id: int) -> Optional[str]:
        if not self.configured:
            return None
        row = await self.database.fetch_one(SQL_STEP_NAME, {"step_id": step_id})
        name = (row or {}).get("step_name")
        return str(name).strip() if name and str(name).strip() else None
