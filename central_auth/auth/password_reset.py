"""
Self-service password reset over native authentication.

    start -> verify-otp -> submit-password

The stages mirror the split sign-up flow. After the new password is
accepted the user is signed in with it, so the final response carries a
full token set. The provider can briefly keep rejecting a just-changed
password; that one case is retried once after a fixed delay.
"""

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from central_auth.auth.claims import assemble_claims
from central_auth.auth.errors import (
    AuthError,
    ErrorKind,
    IdentityProviderError,
    expired_token,
    invalid_grant,
    invalid_request,
)
from central_auth.auth.native import NativeTokens, StageOutcome, user_from_id_claims
from central_auth.auth.signup import is_password_policy_error, require_email, require_native, run_stage
from central_auth.auth.stores import FlowKind, FlowStage
from central_auth.auth.utils import redact_email
from central_auth.dependencies import AppState, get_app_state
from central_auth.models import EmailRequest, ResetPasswordRequest, VerifyOtpRequest

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Password reset is not configured (TENANT_NAME required)"
SESSION_EXPIRED = "Reset session expired. Please start password reset again."
SIGN_IN_MANUALLY = "Password reset successfully. Please sign in with your new password."
START_FAILED = "Failed to start password reset"
CODE_NOT_SENT = "Failed to send verification code"
CODE_REJECTED = "Invalid or expired verification code"
PASSWORD_REJECTED = "Password reset failed"

# Error text the provider returns while a new password is still propagating.
NOT_PROPAGATED_MARKERS = ("password_expired", "user_password_expired", "aadsts50055", "expired")

reset_router = APIRouter(
    prefix="/auth/password-reset",
    tags=["password-reset"],
)


def is_not_yet_propagated(exc: IdentityProviderError) -> bool:
    text = " ".join(filter(None, [exc.code, exc.suberror, exc.description])).lower()
    return any(marker in text for marker in NOT_PROPAGATED_MARKERS)


async def sign_in_after_reset(app_state: AppState, email: str, new_password: str) -> NativeTokens:
    """
    Sign in with a freshly reset password, retrying once if it has not
    propagated yet.

    Raises:
        IdentityProviderError: If sign-in still fails
    """
    settings = app_state.settings
    await asyncio.sleep(settings.RESET_SIGN_IN_DELAY_SECONDS)
    try:
        return await app_state.native.sign_in(email, new_password)
    except IdentityProviderError as e:
        if e.kind != ErrorKind.USER_INPUT or not is_not_yet_propagated(e):
            raise
        logger.info(f"New password not yet accepted for {redact_email(email)}, retrying once")

    await asyncio.sleep(settings.RESET_SIGN_IN_RETRY_DELAY_SECONDS)
    return await app_state.native.sign_in(email, new_password)


# =============================================================================
# Endpoints
# =============================================================================

@reset_router.post("/start")
async def reset_start(body: EmailRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    email = require_email(body.email)
    require_native(app_state, NOT_CONFIGURED)

    start = await run_stage(app_state.native.reset_start(email))
    if start.outcome == StageOutcome.REDIRECT_REQUIRED:
        raise AuthError(status.HTTP_400_BAD_REQUEST, "redirect_required", "Web-based password reset is required")
    if start.outcome != StageOutcome.SUCCESS:
        logger.warning(
            f"resetpassword/start rejected for {redact_email(email)}: {start.error}: {start.error_description}"
        )
        if start.error == "user_not_found":
            raise AuthError(status.HTTP_400_BAD_REQUEST, "user_not_found", "No account found with this email")
        raise AuthError(status.HTTP_400_BAD_REQUEST, "reset_failed", START_FAILED)
    if not start.continuation_token:
        raise AuthError(status.HTTP_500_INTERNAL_SERVER_ERROR, "reset_failed", START_FAILED)

    challenge = await run_stage(app_state.native.reset_challenge(start.continuation_token))
    if challenge.outcome == StageOutcome.REDIRECT_REQUIRED:
        raise AuthError(status.HTTP_400_BAD_REQUEST, "redirect_required", "Web-based password reset is required")
    if challenge.outcome != StageOutcome.SUCCESS:
        logger.warning(
            f"resetpassword/challenge rejected for {redact_email(email)}: "
            f"{challenge.error}: {challenge.error_description}"
        )
        raise AuthError(status.HTTP_400_BAD_REQUEST, "reset_failed", CODE_NOT_SENT)
    if not challenge.continuation_token:
        raise AuthError(status.HTTP_500_INTERNAL_SERVER_ERROR, "reset_failed", CODE_NOT_SENT)

    app_state.stores.save_flow(FlowKind.PASSWORD_RESET, FlowStage.STARTED, email, challenge.continuation_token)
    logger.info(f"Password reset code sent to {redact_email(email)}")

    return {
        "message": "Verification code sent to your email",
        "email": redact_email(email),
    }


@reset_router.post("/verify-otp")
async def reset_verify_otp(body: VerifyOtpRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    email = require_email(body.email)
    if not body.code or not body.code.strip():
        raise invalid_request("code is required")
    require_native(app_state, NOT_CONFIGURED)

    flow = app_state.stores.take_flow(FlowKind.PASSWORD_RESET, FlowStage.STARTED, email)
    if flow is None:
        raise expired_token(SESSION_EXPIRED)

    result = await run_stage(app_state.native.reset_submit_code(flow.continuation_token, body.code.strip()))
    accepted = result.outcome in (StageOutcome.SUCCESS, StageOutcome.CREDENTIAL_REQUIRED)
    if not accepted or not result.continuation_token:
        logger.info(f"Reset code rejected for {redact_email(email)}: {result.error}: {result.error_description}")
        raise invalid_grant(CODE_REJECTED)

    app_state.stores.save_flow(FlowKind.PASSWORD_RESET, FlowStage.OTP_VERIFIED, email, result.continuation_token)
    return {"message": "Code verified. Proceed to set new password."}


@reset_router.post("/submit-password")
async def reset_submit_password(body: ResetPasswordRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    """
    Set the new password, then sign in with it.

    If the password was changed but sign-in still fails, the response is a
    200 with `sign_in_after_reset_failed: true` and no tokens.
    """
    email = require_email(body.email)
    if not body.new_password:
        raise invalid_request("new_password is required")
    require_native(app_state, NOT_CONFIGURED)

    flow = app_state.stores.take_flow(FlowKind.PASSWORD_RESET, FlowStage.OTP_VERIFIED, email)
    if flow is None:
        if app_state.stores.has_flow(FlowKind.PASSWORD_RESET, FlowStage.STARTED, email):
            raise AuthError(
                status.HTTP_400_BAD_REQUEST,
                "otp_verification_required",
                "Verify the code sent to your email before setting a new password.",
            )
        raise expired_token(SESSION_EXPIRED)

    submitted = await run_stage(app_state.native.reset_submit_password(flow.continuation_token, body.new_password))
    if submitted.outcome != StageOutcome.SUCCESS:
        logger.info(
            f"New password rejected for {redact_email(email)}: "
            f"{submitted.error}/{submitted.suberror}: {submitted.error_description}"
        )
        if is_password_policy_error(submitted):
            raise AuthError(status.HTTP_400_BAD_REQUEST, "password_too_weak", "Password does not meet requirements")
        raise invalid_grant(PASSWORD_REJECTED)

    logger.info(f"Password reset for {redact_email(email)}, signing in")

    try:
        tokens = await sign_in_after_reset(app_state, email, body.new_password)
        id_claims = tokens.id_claims()
    except IdentityProviderError as e:
        logger.warning(f"Sign-in after reset failed for {redact_email(email)}: {e}")
        return {
            "message": SIGN_IN_MANUALLY,
            "sign_in_after_reset_failed": True,
            "sign_in_error": "invalid_grant" if e.kind == ErrorKind.USER_INPUT else "temporarily_unavailable",
        }

    user = user_from_id_claims(
        id_claims,
        fallback_email=email,
        role_attribute=app_state.settings.ENTRA_ROLE_EXTENSION_ATTRIBUTE,
    )
    datastore_claims = await app_state.issuer.resolve_claims_or_default(user)
    issued = app_state.issuer.issue(assemble_claims(user, datastore_claims))

    return issued.to_response(
        journey_status=await app_state.tracker.status(user.email or email, "SIGNED_IN"),
        person_id=datastore_claims.person_id if datastore_claims is not None else None,
        refresh_expiry_time=issued.refresh_expires_in,
    )
