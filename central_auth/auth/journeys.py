"""
Registration journey tracking.

Sign-up and password reset record their progress in the prospect and
registration-journey tables. Tracking never decides the outcome of a
request: every datastore failure here is logged and absorbed.
"""

import logging
from enum import IntEnum
from typing import Optional, Tuple

from central_auth.auth.utils import redact_email
from central_auth.db import Datastore, DatastoreError

logger = logging.getLogger(__name__)


class JourneyStep(IntEnum):
    PROSPECT_CREATED = 10
    VERIFICATION_SENT = 20
    OTP_VERIFIED = 30
    PASSWORD_SET = 40
    PERSON_CREATED = 50
    SIGNUP_COMPLETED = 60


COMPLETED = "COMPLETED"
FAILED = "FAILED"

SELF_SERVE_ROUTE = "self-serve"


class JourneyTracker:
    """Best-effort writer for prospect and registration-journey rows."""

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def ensure_prospect(self, email: str) -> Tuple[Optional[int], bool]:
        """
        Find or create the prospect for an email.

        Returns:
            (prospect_id or None, whether it was created now)
        """
        try:
            prospect = await self.datastore.get_prospect_by_email(email)
            if prospect is not None:
                return prospect.prospect_id, False

            prospect = await self.datastore.create_prospect(email, SELF_SERVE_ROUTE, "system")
            if prospect is None:
                return None, False
            return prospect.prospect_id, True
        except DatastoreError as e:
            logger.warning(f"Prospect lookup failed for {redact_email(email)} (continuing): {e}")
            return None, False

    async def record(self, email: str, step: JourneyStep, status: str = COMPLETED) -> None:
        try:
            prospect = await self.datastore.get_prospect_by_email(email)
            if prospect is None:
                return
            await self.datastore.record_journey_step(prospect.prospect_id, int(step), status)
        except DatastoreError as e:
            logger.warning(f"Recording journey step {step.name} failed (continuing): {e}")

    async def record_for_prospect(self, prospect_id: int, step: JourneyStep, status: str = COMPLETED) -> None:
        try:
            await self.datastore.record_journey_step(prospect_id, int(step), status)
        except DatastoreError as e:
            logger.warning(f"Recording journey step {step.name} failed (continuing): {e}")

    async def link_person(self, email: str, person_id: str) -> None:
        """Attach the provisioned person to the email's prospect row."""
        try:
            await self.datastore.create_prospect(
                email,
                entry_route=None,
                created_by=None,
                person_uuid=person_id,
                update_only=True,
            )
        except DatastoreError as e:
            logger.warning(f"Linking person to prospect failed (continuing): {e}")

    async def person_exists(self, email: str) -> bool:
        try:
            return await self.datastore.get_claims_by_email(email) is not None
        except DatastoreError as e:
            logger.warning(f"person_exists check failed (continuing): {e}")
            return False

    async def status(
        self,
        email: str,
        default: str,
        step: Optional[JourneyStep] = None,
    ) -> str:
        """
        Journey status string for a response.

        Uses the workflow step name of `step` (or of the latest journey's
        step), then the latest journey's status, then `default`.
        """
        try:
            prospect = await self.datastore.get_prospect_by_email(email)
            if prospect is None:
                return default

            latest = await self.datastore.latest_journey(prospect.prospect_id)
            if latest is None:
                return default

            step_id = int(step) if step is not None else latest.current_step_id
            name = await self.datastore.step_name(step_id) if step_id is not None else None
            return name or latest.status or f"STEP_{latest.current_step_id}"
        except DatastoreError as e:
            logger.warning(f"journey_status lookup failed (continuing): {e}")
            return default
