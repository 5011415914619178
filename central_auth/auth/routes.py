"""
Authentication routes for the browser redirect flow.

This module implements the OAuth 2.0 / OIDC authorization code flow with
PKCE against Microsoft Entra ID or Google. The browser never sees a platform
token: the callback hands the spoke app a one-time exchange code, which the
app redeems at /auth/token/exchange.
"""

import logging
import secrets
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from central_auth.auth.errors import (
    AuthError,
    ErrorKind,
    IdentityProviderError,
    invalid_request,
    provider_unavailable,
)
from central_auth.auth.providers import Provider, generate_code_challenge, generate_code_verifier
from central_auth.auth.rate_limit import RateLimitTier
from central_auth.auth.signer import get_current_user
from central_auth.auth.stores import AuthorizationSession
from central_auth.auth.utils import redact_email
from central_auth.config import is_redirect_uri_allowed
from central_auth.dependencies import AppState, get_app_state, rate_limit

logger = logging.getLogger(__name__)

STATE_COOKIE = "auth_state"


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


def append_query(url: str, params: Dict[str, str]) -> str:
    """Add query parameters to a URL, keeping any it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get(
    "/login",
    response_class=RedirectResponse,
    dependencies=[Depends(rate_limit(RateLimitTier.AUTH))],
)
async def login(
    client_id: Optional[str] = Query(None, description="Requesting spoke app"),
    redirect_uri: Optional[str] = Query(None, description="Where to send the exchange code"),
    provider: Optional[str] = Query(None, description="microsoft (default) or google"),
    app_state: AppState = Depends(get_app_state),
):
    """
    Start a browser login by redirecting to the identity provider.

    This endpoint:
    1. Checks client_id and the redirect_uri against the allow-list
    2. Generates state, nonce and a PKCE verifier
    3. Stores them as an authorization session keyed by state
    4. Sets the state cookie used for the CSRF check at callback
    5. Redirects to the provider's authorization endpoint

    An unknown or unconfigured provider falls back to Microsoft.
    """
    settings = app_state.settings

    if not client_id:
        raise invalid_request("client_id is required")
    if not redirect_uri:
        raise invalid_request("redirect_uri is required")
    if not is_redirect_uri_allowed(redirect_uri, settings):
        logger.warning("Rejected login with unregistered redirect_uri", extra={"redirect_uri": redirect_uri})
        raise invalid_request("Invalid redirect_uri. Must be one of the configured redirect URIs.")

    selected = Provider.parse(provider, google_enabled=settings.google_enabled)
    oauth_client = app_state.oauth_clients[selected]

    state = secrets.token_urlsafe(32)
    nonce = secrets.token_urlsafe(32)
    code_verifier = generate_code_verifier()

    app_state.stores.sessions.put(state, AuthorizationSession(
        state=state,
        code_verifier=code_verifier,
        nonce=nonce,
        redirect_uri=redirect_uri,
        provider=selected,
        client_id=client_id,
    ))

    logger.info(f"Login started for client {client_id} via {selected.value}")

    response = RedirectResponse(
        url=oauth_client.authorization_url(state, nonce, generate_code_challenge(code_verifier)),
        status_code=status.HTTP_302_FOUND,
    )
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=settings.SESSION_TTL_SECONDS,
        httponly=True,
        secure=settings.HTTPS_ENABLED,
        samesite="lax",
    )
    return response


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get(
    "/callback",
    response_class=RedirectResponse,
    dependencies=[Depends(rate_limit(RateLimitTier.AUTH))],
)
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the identity provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
    app_state: AppState = Depends(get_app_state),
):
    """
    Handle the identity provider's redirect back to this service.

    This endpoint:
    1. Checks the state against the state cookie
    2. Consumes the authorization session for that state
    3. Exchanges the code with the provider recorded on the session
    4. Resolves datastore claims, signs a token and mints a refresh token
    5. Redirects to the session's redirect_uri with an exchange code

    Any provider value sent to this endpoint is ignored; the session decides.
    """
    if error:
        logger.warning(f"Identity provider returned an error: {error}: {error_description}")
        raise AuthError(status.HTTP_400_BAD_REQUEST, error, error_description or error)

    if not code or not state:
        raise invalid_request("Missing required parameters (code or state)")

    cookie_state = request.cookies.get(STATE_COOKIE)
    if not cookie_state or not secrets.compare_digest(cookie_state, state):
        logger.warning("Callback state does not match the state cookie")
        raise AuthError(status.HTTP_400_BAD_REQUEST, "invalid_state", "Invalid state parameter")

    session = app_state.stores.sessions.consume(state)
    if session is None:
        raise AuthError(status.HTTP_400_BAD_REQUEST, "invalid_session", "Session expired or invalid")

    oauth_client = app_state.oauth_clients.get(session.provider)
    if oauth_client is None:
        logger.error(f"Session provider {session.provider.value} is no longer configured")
        raise AuthError(status.HTTP_400_BAD_REQUEST, "unsupported_provider", "Identity provider is not configured")

    try:
        user = await oauth_client.fetch_user(code, session.code_verifier, session.nonce)
    except IdentityProviderError as e:
        if e.kind != ErrorKind.USER_INPUT:
            raise provider_unavailable(e)
        logger.warning(f"{session.provider.value} code exchange failed: {e}")
        raise AuthError(status.HTTP_400_BAD_REQUEST, "idp_error", "Unable to complete sign-in with the identity provider")

    issued = await app_state.issuer.issue_for_user(user)
    exchange_code = app_state.stores.create_exchange_code(
        issued.access_token,
        issued.expires_in,
        session.client_id,
        refresh_token=issued.refresh_token,
    )

    logger.info(
        f"Callback complete for {redact_email(user.email)}, issuing exchange code to {session.client_id}",
        extra={"provider": session.provider.value},
    )

    response = RedirectResponse(
        url=append_query(session.redirect_uri, {"code": exchange_code, "state": state}),
        status_code=status.HTTP_302_FOUND,
    )
    response.delete_cookie(STATE_COOKIE)
    return response


# =============================================================================
# Logout Endpoints
# =============================================================================

def _post_logout_target(post_logout_redirect_uri: Optional[str], app_state: AppState) -> str:
    settings = app_state.settings
    if post_logout_redirect_uri and is_redirect_uri_allowed(post_logout_redirect_uri, settings):
        return post_logout_redirect_uri
    if post_logout_redirect_uri:
        logger.warning("Ignoring unregistered post_logout_redirect_uri", extra={"uri": post_logout_redirect_uri})
    return settings.base_url


@auth_router.get("/logout", response_class=RedirectResponse)
async def logout(
    post_logout_redirect_uri: Optional[str] = Query(None),
    provider: Optional[str] = Query(None),
    app_state: AppState = Depends(get_app_state),
):
    """
    Clear the identity provider session, then return to the spoke app.

    Platform tokens are stateless; the client discards its own copy.
    """
    target = _post_logout_target(post_logout_redirect_uri, app_state)
    selected = Provider.parse(provider, google_enabled=app_state.settings.google_enabled)
    logout_url = app_state.oauth_clients[selected].logout_url(target)
    logger.info(f"Logout via {selected.value}")
    return RedirectResponse(url=logout_url, status_code=status.HTTP_302_FOUND)


@auth_router.get("/logout/simple", response_class=RedirectResponse)
async def simple_logout(
    post_logout_redirect_uri: Optional[str] = Query(None),
    app_state: AppState = Depends(get_app_state),
):
    """Redirect to the post-logout URL without an identity provider round trip."""
    return RedirectResponse(
        url=_post_logout_target(post_logout_redirect_uri, app_state),
        status_code=status.HTTP_302_FOUND,
    )


# =============================================================================
# Current User
# =============================================================================

@auth_router.get("/me", dependencies=[Depends(rate_limit(RateLimitTier.API))])
async def me(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """Claims of the presented platform token."""
    return {"user": user}
