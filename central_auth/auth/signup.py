"""
Self-service sign-up over native authentication.

Two shapes share the same stages:

    split:     start -> verify-otp -> submit-password
    one-shot:  start -> complete

Between calls the flow's continuation token is held per email, one store
per stage (STARTED after start, OTP_VERIFIED after verify-otp). Each call
consumes the token it needs, so a failed stage is restarted from `start`.

Progress is recorded in the registration-journey tables on a best-effort
basis; `journey_status` in each response reflects what was recorded.
"""

import logging
from typing import Any, Awaitable, Dict, Optional

from fastapi import APIRouter, Depends, status

from central_auth.auth.claims import assemble_claims
from central_auth.auth.errors import (
    AuthError,
    ErrorKind,
    IdentityProviderError,
    expired_token,
    invalid_grant,
    invalid_request,
    provider_unavailable,
)
from central_auth.auth.journeys import FAILED, JourneyStep
from central_auth.auth.native import StageOutcome, StageResult, user_from_id_claims
from central_auth.auth.stores import FlowKind, FlowStage
from central_auth.auth.utils import email_local_part, is_valid_email, redact_email
from central_auth.db import DatastoreError
from central_auth.dependencies import AppState, get_app_state
from central_auth.models import EmailRequest, SignupCompleteRequest, SignupPasswordRequest, VerifyOtpRequest

logger = logging.getLogger(__name__)

PASSWORD_POLICY_SUBERRORS = frozenset({
    "password_too_weak",
    "password_too_short",
    "password_too_long",
    "password_recently_used",
    "password_banned",
    "password_is_invalid",
})

SIGNUP_FAILED = "Failed to initiate sign-up. Please try again."
COMPLETE_FAILED = "Failed to complete sign-up. Please try again."

signup_router = APIRouter(
    prefix="/auth/signup",
    tags=["signup"],
)


# =============================================================================
# Helpers
# =============================================================================

def require_email(email: Optional[str]) -> str:
    """Normalized email from a request body, or a 400."""
    if not email or not email.strip():
        raise invalid_request("email is required")
    normalized = email.strip().lower()
    if not is_valid_email(normalized):
        raise invalid_request("Invalid email format")
    return normalized


def require_native(app_state: AppState, description: str) -> None:
    if not app_state.native.configured:
        raise AuthError(status.HTTP_503_SERVICE_UNAVAILABLE, "native_auth_unavailable", description)


async def run_stage(call: Awaitable[StageResult]) -> StageResult:
    """Await a native-auth stage, mapping transient and configuration failures to 503."""
    try:
        return await call
    except IdentityProviderError as e:
        raise provider_unavailable(e)


def is_password_policy_error(result: StageResult) -> bool:
    return result.suberror in PASSWORD_POLICY_SUBERRORS


# =============================================================================
# Start
# =============================================================================

@signup_router.post("/start")
async def signup_start(body: EmailRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    """Send a verification code and open a sign-up flow for the email."""
    email = require_email(body.email)
    require_native(app_state, "Sign-up is not configured for this tenant (TENANT_NAME required)")

    start = await run_stage(app_state.native.signup_start(email))
    if start.outcome == StageOutcome.REDIRECT_REQUIRED:
        raise AuthError(status.HTTP_400_BAD_REQUEST, "redirect_required", "Web-based sign-up is required for this account")
    if start.outcome != StageOutcome.SUCCESS:
        logger.warning(f"signup/start rejected for {redact_email(email)}: {start.error}")
        if start.error == "user_already_exists":
            raise AuthError(
                status.HTTP_400_BAD_REQUEST,
                "user_already_exists",
                "An account with this email already exists",
                person_exists=await app_state.tracker.person_exists(email),
            )
        raise AuthError(status.HTTP_400_BAD_REQUEST, "signup_failed", SIGNUP_FAILED)
    if not start.continuation_token:
        raise AuthError(status.HTTP_500_INTERNAL_SERVER_ERROR, "signup_failed", SIGNUP_FAILED)

    challenge = await run_stage(app_state.native.signup_challenge(start.continuation_token))
    if challenge.outcome == StageOutcome.REDIRECT_REQUIRED:
        raise AuthError(status.HTTP_400_BAD_REQUEST, "redirect_required", "Web-based sign-up is required for this account")
    if challenge.outcome != StageOutcome.SUCCESS:
        logger.warning(f"signup/challenge rejected for {redact_email(email)}: {challenge.error}")
        raise AuthError(status.HTTP_400_BAD_REQUEST, "signup_failed", "Failed to send verification code. Please try again.")
    if not challenge.continuation_token:
        raise AuthError(status.HTTP_500_INTERNAL_SERVER_ERROR, "signup_failed", "Failed to send verification code. Please try again.")

    app_state.stores.save_flow(FlowKind.SIGNUP, FlowStage.STARTED, email, challenge.continuation_token)
    logger.info(f"Sign-up code sent to {redact_email(email)}")

    prospect_id, created = await app_state.tracker.ensure_prospect(email)
    if prospect_id is not None:
        if created:
            await app_state.tracker.record_for_prospect(prospect_id, JourneyStep.PROSPECT_CREATED)
        await app_state.tracker.record_for_prospect(prospect_id, JourneyStep.VERIFICATION_SENT)

    response: Dict[str, Any] = {
        "message": "Verification code sent to your email",
        "email": redact_email(email),
        "journey_status": await app_state.tracker.status(email, "OTP_SENT"),
        "person_exists": await app_state.tracker.person_exists(email),
    }
    if created and prospect_id is not None:
        response["prospect_id"] = prospect_id
    return response


# =============================================================================
# Verify OTP (split flow)
# =============================================================================

async def _submit_code(app_state: AppState, email: str, continuation_token: str, code: str) -> str:
    """
    Send the one-time code. Returns the continuation token for the password stage.

    `credential_required` is how the provider says the code was right and a
    password is still needed.
    """
    result = await run_stage(app_state.native.signup_submit_code(continuation_token, code))
    accepted = result.outcome in (StageOutcome.CREDENTIAL_REQUIRED, StageOutcome.SUCCESS)
    if not accepted or not result.continuation_token:
        logger.info(f"Sign-up code rejected for {redact_email(email)}: {result.error}")
        await app_state.tracker.record(email, JourneyStep.OTP_VERIFIED, FAILED)
        raise invalid_grant(
            "Invalid verification code",
            status_code=status.HTTP_401_UNAUTHORIZED,
            journey_status="OTP_VERIFICATION_FAILED",
        )

    await app_state.tracker.record(email, JourneyStep.OTP_VERIFIED)
    return result.continuation_token


async def _take_started(app_state: AppState, email: str) -> str:
    flow = app_state.stores.take_flow(FlowKind.SIGNUP, FlowStage.STARTED, email)
    if flow is None:
        await app_state.tracker.record(email, JourneyStep.OTP_VERIFIED, FAILED)
        raise expired_token(
            "Verification code expired. Please start sign-up again.",
            journey_status="OTP_VERIFICATION_FAILED",
        )
    return flow.continuation_token


@signup_router.post("/verify-otp")
async def signup_verify_otp(body: VerifyOtpRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    email = require_email(body.email)
    if not body.code or not body.code.strip():
        raise invalid_request("code is required")
    require_native(app_state, "Sign-up is not configured for this tenant (TENANT_NAME required)")

    continuation_token = await _take_started(app_state, email)
    next_token = await _submit_code(app_state, email, continuation_token, body.code.strip())
    app_state.stores.save_flow(FlowKind.SIGNUP, FlowStage.OTP_VERIFIED, email, next_token)

    return {
        "ok": True,
        "message": "OTP verified. Proceed to submit password.",
        "journey_status": await app_state.tracker.status(email, "OTP_VERIFIED", step=JourneyStep.OTP_VERIFIED),
    }


# =============================================================================
# Password, attributes and token
# =============================================================================

async def _finish_signup(
    app_state: AppState,
    email: str,
    continuation_token: str,
    password: str,
    display_name: str,
    role: str,
) -> Dict[str, Any]:
    """
    Submit the password and profile attributes, redeem the final token and
    provision the person.

    `attributes_required` after the password is the expected way forward.
    """
    native = app_state.native
    tracker = app_state.tracker
    settings = app_state.settings

    submitted = await run_stage(native.signup_submit_password(continuation_token, password))
    if submitted.outcome not in (StageOutcome.ATTRIBUTES_REQUIRED, StageOutcome.SUCCESS):
        logger.info(f"Sign-up password rejected for {redact_email(email)}: {submitted.error}/{submitted.suberror}")
        await tracker.record(email, JourneyStep.PASSWORD_SET, FAILED)
        if is_password_policy_error(submitted):
            raise AuthError(
                status.HTTP_400_BAD_REQUEST,
                "password_too_weak",
                "Password does not meet requirements",
                journey_status="PASSWORD_VERIFICATION_FAILED",
            )
        if submitted.error == "user_already_exists" or submitted.suberror == "user_already_exists":
            raise AuthError(status.HTTP_400_BAD_REQUEST, "user_already_exists", "An account with this email already exists")
        raise invalid_grant(
            "Invalid password",
            status_code=status.HTTP_401_UNAUTHORIZED,
            journey_status="PASSWORD_VERIFICATION_FAILED",
        )

    continuation_token = submitted.continuation_token or continuation_token
    await tracker.record(email, JourneyStep.PASSWORD_SET)

    if submitted.outcome == StageOutcome.ATTRIBUTES_REQUIRED:
        attributes = {
            "displayName": display_name,
            settings.ENTRA_ROLE_EXTENSION_ATTRIBUTE: role,
        }
        attributed = await run_stage(native.signup_submit_attributes(continuation_token, attributes))
        if attributed.outcome != StageOutcome.SUCCESS:
            logger.info(
                f"Sign-up attributes rejected for {redact_email(email)}: "
                f"{attributed.error}: {attributed.error_description}"
            )
            raise AuthError(status.HTTP_400_BAD_REQUEST, "invalid_attributes", "Invalid or missing required attributes")
        continuation_token = attributed.continuation_token or continuation_token

    try:
        tokens = await native.redeem_continuation_token(continuation_token, email)
        id_claims = tokens.id_claims()
    except IdentityProviderError as e:
        if e.kind != ErrorKind.USER_INPUT:
            raise provider_unavailable(e)
        logger.warning(f"Sign-up token redemption failed for {redact_email(email)}: {e}")
        raise AuthError(status.HTTP_401_UNAUTHORIZED, "token_failed", COMPLETE_FAILED)

    user = user_from_id_claims(
        id_claims,
        fallback_email=email,
        fallback_name=display_name,
        role_attribute=settings.ENTRA_ROLE_EXTENSION_ATTRIBUTE,
    )
    if not user.name or user.name == "Unknown":
        user.name = display_name

    try:
        datastore_claims = await app_state.issuer.resolve_claims(user, role_hint=user.persona_code or role)
    except DatastoreError as e:
        logger.error(f"Person provisioning failed for {redact_email(email)}: {e}", exc_info=True)
        datastore_claims = None
        provisioning_failed = True
    else:
        provisioning_failed = app_state.datastore.configured and datastore_claims is None

    if provisioning_failed:
        await tracker.record(email, JourneyStep.PERSON_CREATED, FAILED)
        raise AuthError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "person_creation_failed",
            "Failed to create or load person record.",
            journey_status="PERSON_ID_GENERATION_FAILED",
        )

    person_id = datastore_claims.person_id if datastore_claims is not None else None
    if person_id is not None:
        await tracker.link_person(email, person_id)
        await tracker.record(email, JourneyStep.PERSON_CREATED)
        await tracker.record(email, JourneyStep.SIGNUP_COMPLETED)

    issued = app_state.issuer.issue(assemble_claims(user, datastore_claims))
    logger.info(f"Sign-up completed for {redact_email(email)}")

    return issued.to_response(
        journey_status=await tracker.status(email, "SIGNUP_COMPLETED", step=JourneyStep.SIGNUP_COMPLETED),
        person_id=person_id,
        refresh_expiry_time=issued.refresh_expires_in,
    )


def _require_password_fields(body: SignupPasswordRequest) -> str:
    """Checks password and role; returns the display name to use."""
    if not body.password:
        raise invalid_request("password is required")
    if not body.role or not body.role.strip():
        raise invalid_request("role is required")
    if body.display_name and body.display_name.strip():
        return body.display_name.strip()
    return email_local_part(body.email or "")


@signup_router.post("/submit-password")
async def signup_submit_password(body: SignupPasswordRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    """Final call of the split flow. Requires a prior successful verify-otp."""
    email = require_email(body.email)
    display_name = _require_password_fields(body)
    require_native(app_state, "Sign-up is not configured for this tenant (TENANT_NAME required)")

    flow = app_state.stores.take_flow(FlowKind.SIGNUP, FlowStage.OTP_VERIFIED, email)
    if flow is None:
        if app_state.stores.has_flow(FlowKind.SIGNUP, FlowStage.STARTED, email):
            raise AuthError(
                status.HTTP_400_BAD_REQUEST,
                "otp_verification_required",
                "Verify the code sent to your email before setting a password.",
            )
        raise expired_token(
            "Sign-up session expired. Please start sign-up again.",
            journey_status="PASSWORD_VERIFICATION_FAILED",
        )

    return await _finish_signup(
        app_state,
        email,
        flow.continuation_token,
        body.password,
        display_name,
        body.role.strip(),
    )


# =============================================================================
# Complete (one-shot)
# =============================================================================

@signup_router.post("/complete")
async def signup_complete(body: SignupCompleteRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    """Verify the code and finish sign-up in one call."""
    email = require_email(body.email)
    if not body.code or not body.code.strip():
        raise invalid_request("code is required")
    if not body.display_name or not body.display_name.strip():
        raise invalid_request("displayName is required")
    display_name = _require_password_fields(body)
    require_native(app_state, "Sign-up is not configured for this tenant (TENANT_NAME required)")

    continuation_token = await _take_started(app_state, email)
    next_token = await _submit_code(app_state, email, continuation_token, body.code.strip())

    return await _finish_signup(
        app_state,
        email,
        next_token,
        body.password,
        display_name,
        body.role.strip(),
    )
