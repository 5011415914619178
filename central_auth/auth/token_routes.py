"""
Token endpoints: exchange-code redemption, refresh and password login.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from central_auth.auth.errors import (
    ErrorKind,
    IdentityProviderError,
    invalid_grant,
    invalid_request,
    provider_unavailable,
)
from central_auth.auth.native import user_from_id_claims
from central_auth.auth.utils import redact_email
from central_auth.dependencies import AppState, get_app_state
from central_auth.models import ExchangeRequest, PasswordLoginRequest, RefreshRequest, TokenResponse

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"

token_router = APIRouter(
    prefix="/auth/token",
    tags=["tokens"],
)


@token_router.post("/exchange", response_model=TokenResponse, response_model_exclude_none=True)
async def exchange(body: ExchangeRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    """
    Redeem a one-time exchange code for the token issued at callback.

    The code is spent on the first attempt, including one made with the
    wrong client_id.
    """
    if not body.exchange_code:
        raise invalid_request("exchange_code is required")
    if not body.client_id:
        raise invalid_request("client_id is required")

    grant = app_state.stores.consume_exchange_code(body.exchange_code, body.client_id)
    if grant is None:
        raise invalid_grant("Exchange code invalid, expired, or already used")

    logger.info(f"Exchange code redeemed by {body.client_id}")
    response: Dict[str, Any] = {
        "access_token": grant.access_token,
        "token_type": "Bearer",
        "expires_in": grant.expires_in,
    }
    if grant.refresh_token:
        response["refresh_token"] = grant.refresh_token
    return response


@token_router.post("/refresh", response_model=TokenResponse)
async def refresh(body: RefreshRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    """Rotate a refresh token and sign a new access token from its claims."""
    if not body.refresh_token:
        raise invalid_request("refresh_token is required")

    redeemed = app_state.stores.redeem_refresh_token(body.refresh_token, rotate=True)
    if redeemed is None:
        raise invalid_grant("Refresh token invalid or expired")

    claims, new_refresh_token = redeemed
    return {
        "access_token": app_state.signer.sign(claims),
        "token_type": "Bearer",
        "expires_in": app_state.signer.expires_in,
        "refresh_token": new_refresh_token,
    }


@token_router.post("/password", response_model=TokenResponse)
async def password_login(body: PasswordLoginRequest, app_state: AppState = Depends(get_app_state)) -> Dict[str, Any]:
    """
    Sign in with username and password through native authentication.

    Every credential failure returns the same error, whichever stage
    rejected it.
    """
    if not body.username:
        raise invalid_request("username is required")
    if not body.password:
        raise invalid_request("password is required")

    username = body.username.strip().lower()

    try:
        tokens = await app_state.native.sign_in(username, body.password)
        id_claims = tokens.id_claims()
    except IdentityProviderError as e:
        if e.kind != ErrorKind.USER_INPUT:
            raise provider_unavailable(e)
        logger.info(f"Password sign-in failed for {redact_email(username)}: {e.code}")
        raise invalid_grant(INVALID_CREDENTIALS, status_code=status.HTTP_401_UNAUTHORIZED)

    user = user_from_id_claims(
        id_claims,
        fallback_email=username,
        role_attribute=app_state.settings.ENTRA_ROLE_EXTENSION_ATTRIBUTE,
    )
    issued = await app_state.issuer.issue_for_user(user)
    logger.info(f"Password sign-in succeeded for {redact_email(user.email)}")
    return issued.to_response()
