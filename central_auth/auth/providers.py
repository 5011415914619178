"""
Identity provider clients for the browser redirect flow.

Each provider knows how to build its authorization URL, trade an
authorization code (plus PKCE verifier) for tokens, and turn the result into
an `IdentityProviderUser`. The provider chosen at login is stored on the
authorization session and is the only thing the callback dispatches on.
"""

import base64
import hashlib
import logging
import secrets
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from jose import JWTError

from central_auth.auth.claims import IdentityProviderUser
from central_auth.auth.errors import ErrorKind, IdentityProviderError
from central_auth.auth.utils import (
    JwksCache,
    decode_token_without_verification,
    extract_email_from_claims,
    get_user_display_name,
    validate_nonce,
    verify_id_token,
)
from central_auth.config import Settings

logger = logging.getLogger(__name__)


# =============================================================================
# Provider Enumeration
# =============================================================================

class Provider(str, Enum):
    """Identity providers supported by the redirect flow."""
    MICROSOFT = "microsoft"
    GOOGLE = "google"

    @classmethod
    def parse(cls, value: Optional[str], google_enabled: bool = True) -> "Provider":
        """
        Parse a caller-supplied provider name.

        Unknown values, and google when Google is not configured, fall back
        to MICROSOFT instead of failing the login.
        """
        if not value:
            return cls.MICROSOFT

        try:
            provider = cls(value.strip().lower())
        except ValueError:
            logger.warning(f"Unknown provider '{value}', falling back to microsoft")
            return cls.MICROSOFT

        if provider == cls.GOOGLE and not google_enabled:
            logger.warning("Google login requested but not configured, falling back to microsoft")
            return cls.MICROSOFT

        return provider


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """Base64-URL-encoded SHA256 of the verifier (S256 method)."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


# =============================================================================
# HTTP Helpers
# =============================================================================

async def send_request(
    http_client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """
    Send a request to an identity provider.

    Raises:
        IdentityProviderError: TRANSIENT on timeouts and network failures
    """
    try:
        return await http_client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.warning(f"Identity provider call timed out: {url}")
        raise IdentityProviderError(ErrorKind.TRANSIENT, "timeout", str(e)) from e
    except httpx.TransportError as e:
        logger.warning(f"Identity provider unreachable: {url}: {e}")
        raise IdentityProviderError(ErrorKind.TRANSIENT, "network_error", str(e)) from e


def response_json(response: httpx.Response) -> Dict[str, Any]:
    """JSON body of a response, or {} if there is none."""
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def token_endpoint_error(response: httpx.Response) -> IdentityProviderError:
    """Classify a non-2xx token endpoint response."""
    data = response_json(response)
    kind = ErrorKind.TRANSIENT if response.status_code >= 500 else ErrorKind.USER_INPUT
    return IdentityProviderError(
        kind,
        data.get("error") or f"http_{response.status_code}",
        data.get("error_description") or "Token exchange failed",
    )


# =============================================================================
# Provider Clients
# =============================================================================

class OAuthClient(ABC):
    """Authorization-code + PKCE client for one identity provider."""

    provider: Provider

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http = http_client

    @abstractmethod
    def authorization_url(self, state: str, nonce: str, code_challenge: str) -> str:
        ...

    @abstractmethod
    async def fetch_user(self, code: str, code_verifier: str, nonce: str) -> IdentityProviderUser:
        """
        Exchange the authorization code and resolve the user's profile.

        Raises:
            IdentityProviderError: If the exchange fails or the ID token is
                invalid
        """
        ...

    @abstractmethod
    def logout_url(self, post_logout_redirect_uri: str) -> str:
        ...


class MicrosoftOAuthClient(OAuthClient):
    """Microsoft Entra ID (workforce or CIAM) with a Graph profile lookup."""

    provider = Provider.MICROSOFT

    SCOPE = "openid profile email offline_access User.Read"
    GRAPH_URL = "https://graph.microsoft.com/v1.0"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        super().__init__(settings, http_client)
        self.jwks_cache = JwksCache(
            f"{settings.entra_authority}/discovery/v2.0/keys",
            http_client,
            cache_seconds=settings.JWKS_CACHE_SECONDS,
        )

    def authorization_url(self, state: str, nonce: str, code_challenge: str) -> str:
        params = {
            "client_id": self.settings.CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.settings.callback_url,
            "response_mode": "query",
            "scope": self.SCOPE,
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.settings.entra_authority}/oauth2/v2.0/authorize?{urlencode(params)}"

    def logout_url(self, post_logout_redirect_uri: str) -> str:
        query = urlencode({"post_logout_redirect_uri": post_logout_redirect_uri})
        return f"{self.settings.entra_authority}/oauth2/v2.0/logout?{query}"

    async def _exchange_code_for_tokens(self, code: str, code_verifier: str) -> Dict[str, Any]:
        payload = {
            "client_id": self.settings.CLIENT_ID,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.callback_url,
            "scope": self.SCOPE,
            "code_verifier": code_verifier,
        }
        if self.settings.CLIENT_SECRET:
            payload["client_secret"] = self.settings.CLIENT_SECRET

        response = await send_request(
            self.http,
            "POST",
            f"{self.settings.entra_authority}/oauth2/v2.0/token",
            data=payload,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        if not response.is_success:
            raise token_endpoint_error(response)

        token_data = response_json(response)
        if "id_token" not in token_data:
            raise IdentityProviderError(ErrorKind.USER_INPUT, "invalid_response", "Token response missing id_token")
        return token_data

    async def fetch_user(self, code: str, code_verifier: str, nonce: str) -> IdentityProviderUser:
        tokens = await self._exchange_code_for_tokens(code, code_verifier)

        try:
            claims = await verify_id_token(
                tokens["id_token"],
                self.jwks_cache,
                client_id=self.settings.CLIENT_ID,
                tenant_id=self.settings.TENANT_ID,
            )
        except httpx.HTTPError as e:
            raise IdentityProviderError(ErrorKind.TRANSIENT, "jwks_unavailable", str(e)) from e
        except (JWTError, ValueError) as e:
            raise IdentityProviderError(ErrorKind.USER_INPUT, "invalid_id_token", str(e)) from e

        if not validate_nonce(claims, nonce):
            raise IdentityProviderError(ErrorKind.USER_INPUT, "invalid_nonce", "Nonce mismatch")

        user = self.user_from_claims(claims)

        access_token = tokens.get("access_token")
        if access_token:
            try:
                user = await self._fetch_graph_profile(access_token, user)
            except (IdentityProviderError, httpx.HTTPError, ValueError) as e:
                logger.warning(f"Graph profile lookup failed, using ID token claims: {e}")

        return user

    def user_from_claims(self, claims: Dict[str, Any]) -> IdentityProviderUser:
        email = extract_email_from_claims(claims) or ""
        roles = claims.get("roles") or []
        persona = claims.get(self.settings.ENTRA_ROLE_EXTENSION_ATTRIBUTE)
        return IdentityProviderUser(
            object_id=claims.get("oid") or claims.get("sub") or "",
            email=email,
            name=get_user_display_name(claims, email),
            roles=list(roles),
            persona_code=persona or (roles[0] if roles else None),
        )

    async def _fetch_graph_profile(self, access_token: str, user: IdentityProviderUser) -> IdentityProviderUser:
        """
        Enrich a user from Microsoft Graph.

        Raises:
            httpx.HTTPStatusError: If /me is rejected
        """
        headers = {"Authorization": f"Bearer {access_token}"}
        extension = self.settings.ENTRA_ROLE_EXTENSION_ATTRIBUTE
        select = f"id,mail,userPrincipalName,displayName,{extension}"

        response = await send_request(self.http, "GET", f"{self.GRAPH_URL}/me", params={"$select": select}, headers=headers)
        response.raise_for_status()
        profile = response.json()

        roles = list(user.roles)

        assignments = await send_request(self.http, "GET", f"{self.GRAPH_URL}/me/appRoleAssignments", headers=headers)
        if assignments.is_success:
            for item in response_json(assignments).get("value", []):
                role_id = item.get("appRoleId")
                if role_id and role_id not in roles:
                    roles.append(role_id)

        email = extract_email_from_claims(profile) or user.email
        return IdentityProviderUser(
            object_id=profile.get("id") or user.object_id,
            email=email,
            name=profile.get("displayName") or user.name,
            roles=roles,
            persona_code=profile.get(extension) or user.persona_code,
        )


class GoogleOAuthClient(OAuthClient):
    """Google OpenID Connect."""

    provider = Provider.GOOGLE

    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
    LOGOUT_URL = "https://accounts.google.com/logout"
    SCOPE = "openid email profile"

    def authorization_url(self, state: str, nonce: str, code_challenge: str) -> str:
        params = {
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.settings.callback_url,
            "scope": self.SCOPE,
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.AUTHORIZE_URL}?{urlencode(params)}"

    def logout_url(self, post_logout_redirect_uri: str) -> str:
        return f"{self.LOGOUT_URL}?{urlencode({'continue': post_logout_redirect_uri})}"

    async def fetch_user(self, code: str, code_verifier: str, nonce: str) -> IdentityProviderUser:
        response = await send_request(
            self.http,
            "POST",
            self.TOKEN_URL,
            data={
                "client_id": self.settings.GOOGLE_CLIENT_ID,
                "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
                "code": code,
                "code_verifier": code_verifier,
                "grant_type": "authorization_code",
                "redirect_uri": self.settings.callback_url,
            },
        )
        if not response.is_success:
            raise token_endpoint_error(response)

        tokens = response_json(response)

        # Received straight from Google's token endpoint over TLS.
        id_claims: Dict[str, Any] = {}
        if tokens.get("id_token"):
            try:
                id_claims = decode_token_without_verification(tokens["id_token"])
            except JWTError as e:
                raise IdentityProviderError(ErrorKind.USER_INPUT, "invalid_id_token", str(e)) from e
            if id_claims.get("nonce") and not validate_nonce(id_claims, nonce):
                raise IdentityProviderError(ErrorKind.USER_INPUT, "invalid_nonce", "Nonce mismatch")

        profile: Dict[str, Any] = {}
        if tokens.get("access_token"):
            try:
                userinfo = await send_request(
                    self.http,
                    "GET",
                    self.USERINFO_URL,
                    headers={"Authorization": f"Bearer {tokens['access_token']}"},
                )
                userinfo.raise_for_status()
                profile = response_json(userinfo)
            except (IdentityProviderError, httpx.HTTPError) as e:
                logger.warning(f"Google userinfo lookup failed, using ID token claims: {e}")

        merged = {**id_claims, **profile}
        if not merged.get("sub"):
            raise IdentityProviderError(ErrorKind.USER_INPUT, "invalid_response", "Google returned no subject")

        email = extract_email_from_claims(merged) or ""
        return IdentityProviderUser(
            object_id=merged["sub"],
            email=email,
            name=get_user_display_name(merged, email),
        )


def build_oauth_clients(settings: Settings, http_client: httpx.AsyncClient) -> Dict[Provider, OAuthClient]:
    clients: Dict[Provider, OAuthClient] = {
        Provider.MICROSOFT: MicrosoftOAuthClient(settings, http_client),
    }
    if settings.google_enabled:
        clients[Provider.GOOGLE] = GoogleOAuthClient(settings, http_client)
    return clients


__all__: List[str] = [
    "Provider",
    "OAuthClient",
    "MicrosoftOAuthClient",
    "GoogleOAuthClient",
    "build_oauth_clients",
    "generate_code_verifier",
    "generate_code_challenge",
    "send_request",
    "response_json",
]
