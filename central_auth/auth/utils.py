"""
Authentication utilities for ID token verification and log redaction.

This module handles:
- Fetching and caching the Entra JWKS (JSON Web Key Set)
- Verifying ID tokens returned by the Entra token endpoint
- Reading email / display name out of provider claims
- Redacting emails and secrets before they reach the logs
"""

import time
from typing import Any, Dict, Iterable, Optional

import httpx
from jose import JWTError, jwk, jwt


# =============================================================================
# JWKS Cache
# =============================================================================

class JwksCache:
    """
    Cached JWKS document for one identity provider.

    Results are kept for `cache_seconds`; a kid miss forces one refresh so
    that key rotation is picked up without waiting for the cache to expire.
    """

    def __init__(self, jwks_uri: str, http_client: httpx.AsyncClient, cache_seconds: int = 3600):
        self.jwks_uri = jwks_uri
        self._http = http_client
        self.cache_seconds = cache_seconds
        self._jwks: Optional[Dict[str, Any]] = None
        self._fetched_at: float = 0.0

    async def fetch(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch JWKS with caching.

        Raises:
            httpx.HTTPError: If JWKS endpoint is unreachable
            ValueError: If response is invalid
        """
        current_time = time.monotonic()

        if (
            not force_refresh
            and self._jwks
            and (current_time - self._fetched_at) < self.cache_seconds
        ):
            return self._jwks

        response = await self._http.get(self.jwks_uri)
        response.raise_for_status()

        jwks_data = response.json()

        if "keys" not in jwks_data:
            raise ValueError("Invalid JWKS response: missing 'keys' field")

        self._jwks = jwks_data
        self._fetched_at = current_time
        return jwks_data

    def clear(self) -> None:
        self._jwks = None
        self._fetched_at = 0.0


def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Return the JWKS entry matching the token's kid, or None.

    Raises:
        JWTError: If token header is malformed or has no kid
    """
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise JWTError(f"Failed to decode token header: {e}")

    kid = unverified_header.get("kid")
    if not kid:
        raise JWTError("Token header missing 'kid' (Key ID)")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key

    return None


async def verify_id_token(
    id_token: str,
    jwks_cache: JwksCache,
    client_id: str,
    tenant_id: str,
) -> Dict[str, Any]:
    """
    Verify and decode an Entra ID token.

    1. Finds the signing key in the (cached) tenant JWKS
    2. Verifies the signature and standard claims (aud, exp, nbf, iat)
    3. Checks the issuer belongs to the configured tenant

    Nonce is checked by the caller, which knows the expected value.

    Raises:
        JWTError: If token is invalid, expired, or signature doesn't match
        ValueError: If the issuer is not the configured tenant
        httpx.HTTPError: If JWKS endpoint is unreachable
    """
    jwks = await jwks_cache.fetch()

    signing_key = get_signing_key(id_token, jwks)
    if not signing_key:
        jwks = await jwks_cache.fetch(force_refresh=True)
        signing_key = get_signing_key(id_token, jwks)

        if not signing_key:
            raise JWTError(
                "Unable to find matching signing key in JWKS. "
                "Token may be from a different tenant or keys may have rotated."
            )

    try:
        public_key = jwk.construct(signing_key, algorithm="RS256")
    except Exception as e:
        raise JWTError(f"Failed to construct public key from JWK: {e}")

    try:
        claims = jwt.decode(
            id_token,
            public_key.to_pem().decode("utf-8"),
            algorithms=["RS256"],
            audience=client_id,
            options={
                "verify_signature": True,
                "verify_aud": True,
                "verify_iat": True,
                "verify_exp": True,
                "verify_nbf": True,
                "verify_iss": False,
                "verify_sub": True,
                "verify_jti": False,
                "verify_at_hash": False,
                "leeway": 10,  # clock skew
            },
        )
    except jwt.ExpiredSignatureError:
        raise JWTError("ID token has expired")
    except jwt.JWTClaimsError as e:
        raise JWTError(f"Invalid token claims: {e}")
    except JWTError as e:
        raise JWTError(f"Token verification failed: {e}")

    # Workforce issuers are login.microsoftonline.com/{tid}/v2.0,
    # CIAM issuers are {tid}.ciamlogin.com/{tid}/v2.0.
    issuer = claims.get("iss", "")
    if not issuer.startswith("https://") or tenant_id.lower() not in issuer.lower():
        raise ValueError(
            f"Token issued by wrong tenant. Expected {tenant_id}, got issuer {issuer}"
        )

    return claims


def decode_token_without_verification(token: str) -> Dict[str, Any]:
    """
    Decode a JWT without verifying its signature.

    Only for tokens received directly from a provider's token endpoint over
    TLS, where the transport already authenticates the issuer.

    Raises:
        JWTError: If token is malformed
    """
    return jwt.get_unverified_claims(token)


# =============================================================================
# Claim Helpers
# =============================================================================

def extract_email_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    """
    Extract email address from provider claims.

    Providers use different claim names depending on configuration:
    - email: Email address
    - preferred_username: Usually the UPN (user@domain.com)
    - upn: User Principal Name
    - mail / userPrincipalName: Microsoft Graph profile fields
    """
    for claim_name in ["email", "preferred_username", "upn", "mail", "userPrincipalName", "unique_name"]:
        email = claims.get(claim_name)
        if isinstance(email, str) and "@" in email:
            return email.lower().strip()

    return None


def get_user_display_name(claims: Dict[str, Any], fallback_email: Optional[str] = None) -> str:
    """
    Extract user's display name from claims.

    Falls back to the local part of the email, then to "Unknown".
    """
    name = claims.get("name") or claims.get("displayName") or claims.get("given_name")
    if name:
        return name

    email = extract_email_from_claims(claims) or fallback_email
    if email:
        return email_local_part(email)

    return "Unknown"


def validate_nonce(claims: Dict[str, Any], expected_nonce: Optional[str]) -> bool:
    """
    Validate the nonce claim.

    True when neither side carries a nonce or both carry the same one.
    """
    token_nonce = claims.get("nonce")

    if not token_nonce and not expected_nonce:
        return True

    if token_nonce and expected_nonce:
        return token_nonce == expected_nonce

    return False


def email_local_part(email: str) -> str:
    return (email or "").split("@")[0]


def is_valid_email(email: Optional[str]) -> bool:
    """Loose shape check: exactly one '@' with text on both sides."""
    if not email or not isinstance(email, str):
        return False
    parts = email.strip().split("@")
    return len(parts) == 2 and all(parts)


# =============================================================================
# Redaction
# =============================================================================

SENSITIVE_FIELDS = frozenset({
    "password",
    "new_password",
    "oob",
    "client_secret",
    "continuation_token",
    "code_verifier",
    "id_token",
    "access_token",
    "refresh_token",
})


def redact_email(email: Optional[str]) -> str:
    """
    Mask an email for logs and responses.

    >>> redact_email("alice@example.com")
    'al***@example.com'
    """
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def redact_fields(data: Dict[str, Any], extra: Iterable[str] = ()) -> Dict[str, Any]:
    """Copy of a form/JSON body with secrets replaced by [REDACTED]."""
    hidden = SENSITIVE_FIELDS.union(extra)
    redacted: Dict[str, Any] = {}
    for key, value in data.items():
        if key in hidden and value:
            redacted[key] = "[REDACTED]"
        elif key == "username" and isinstance(value, str):
            redacted[key] = redact_email(value)
        else:
            redacted[key] = value
    return redacted
