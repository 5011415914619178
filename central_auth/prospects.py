"""
Prospect and registration-journey endpoints.

Used by invite tooling to register prospects ahead of sign-up. Both
endpoints need a configured datastore.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from central_auth.auth.errors import AuthError, invalid_request
from central_auth.auth.utils import redact_email
from central_auth.db import DatastoreError
from central_auth.dependencies import AppState, get_app_state
from central_auth.models import ProspectRequest, RegistrationJourneyRequest

logger = logging.getLogger(__name__)

prospects_router = APIRouter(tags=["prospects"])


def _require_datastore(app_state: AppState) -> None:
    if not app_state.datastore.configured:
        raise AuthError(status.HTTP_503_SERVICE_UNAVAILABLE, "service_unavailable", "Database is not configured")


@prospects_router.post("/prospects", status_code=status.HTTP_201_CREATED)
async def create_prospect(body: ProspectRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    _require_datastore(app_state)
    if not body.email or not body.email.strip():
        raise invalid_request("email is required")

    email = body.email.strip().lower()
    try:
        prospect = await app_state.datastore.create_prospect(
            email,
            entry_route=(body.entry_route or "").strip() or "invite",
            created_by=(body.created_by or "").strip() or "system",
        )
    except DatastoreError as e:
        logger.error(f"Creating prospect for {redact_email(email)} failed: {e}", exc_info=True)
        raise AuthError(status.HTTP_500_INTERNAL_SERVER_ERROR, "server_error", "Failed to create prospect")

    if prospect is None:
        raise AuthError(status.HTTP_500_INTERNAL_SERVER_ERROR, "create_failed", "Failed to create prospect")

    return {
        "prospect_id": prospect.prospect_id,
        "id": prospect.prospect_id,
        "email": prospect.email,
        "entry_route": prospect.entry_route,
        "person_uuid": prospect.person_uuid,
        "created_by": prospect.created_by,
        "created_at": prospect.created_at,
    }


@prospects_router.post("/registration-journeys", status_code=status.HTTP_201_CREATED)
async def create_registration_journey(
    body: RegistrationJourneyRequest,
    app_state: AppState = Depends(get_app_state),
) -> Dict[str, Any]:
    _require_datastore(app_state)
    if body.prospect_id is None or body.prospect_id < 1:
        raise invalid_request("prospect_id is required and must be a positive number")

    try:
        journey = await app_state.datastore.create_journey(
            body.prospect_id,
            step_name=(body.step_name or "").strip() or "OTP_VERIFICATION",
            status=(body.status or "").strip() or "IN_PROGRESS",
            metadata=body.metadata,
        )
    except DatastoreError as e:
        logger.error(f"Creating registration journey for prospect {body.prospect_id} failed: {e}", exc_info=True)
        raise AuthError(status.HTTP_500_INTERNAL_SERVER_ERROR, "server_error", "Failed to create registration journey")

    if journey is None:
        raise AuthError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "create_failed",
            "Failed to create registration journey (check prospect_id and workflow_steps)",
        )

    return {
        "journey_id": journey.journey_id,
        "id": journey.journey_id,
        "prospect_id": journey.prospect_id,
        "current_step_id": journey.current_step_id,
        "status": journey.status,
        "metadata": journey.metadata,
        "started_at": journey.started_at,
    }
