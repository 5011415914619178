"""
Token Signing Module
====================

Signs claim sets into RS256 JWTs, verifies them, and publishes the public
key as a JWKS document so spoke applications can verify tokens on their own.

The key id (kid) is derived from the public key PEM, so every instance that
loads the same key pair advertises the same kid.
"""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

import jwt
from cryptography.hazmat.primitives import serialization
from fastapi import Depends, Header, HTTPException, Request, status
from jwt.algorithms import RSAAlgorithm
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from central_auth.auth.claims import ClaimSet

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"


# =============================================================================
# Exceptions
# =============================================================================

class TokenSigningError(Exception):
    """Raised when the key material is unusable or signing fails."""
    pass


class TokenVerificationError(Exception):
    """Base class for verification failures."""
    pass


class TokenExpiredError(TokenVerificationError):
    """The token signature is valid but exp has passed."""
    pass


class TokenInvalidError(TokenVerificationError):
    """The token is malformed, tampered with, or fails an iss/aud check."""
    pass


def compute_key_id(public_key_pem: str) -> str:
    """First 16 hex characters of the SHA-256 of the public key PEM."""
    return hashlib.sha256(public_key_pem.encode("utf-8")).hexdigest()[:16]


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


# =============================================================================
# Signer
# =============================================================================

class TokenSigner:
    """
    RS256 signer and verifier for platform tokens.

    Key material is parsed once at construction and never changes afterwards.
    """

    def __init__(
        self,
        private_key_pem: Optional[str],
        public_key_pem: Optional[str],
        issuer: str,
        audience: Optional[List[str]] = None,
        expiration_minutes: int = 15,
    ):
        if not private_key_pem or not public_key_pem:
            raise TokenSigningError("Both JWT_PRIVATE_KEY and JWT_PUBLIC_KEY must be configured")

        try:
            self._private_key = serialization.load_pem_private_key(
                private_key_pem.encode("utf-8"), password=None
            )
            self._public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        except (ValueError, TypeError) as e:
            raise TokenSigningError(f"Unable to load signing keys: {e}") from e

        self.key_id = compute_key_id(public_key_pem)
        self.issuer = issuer
        self.audience = list(audience or [])
        self.expiration_minutes = expiration_minutes

    @property
    def expires_in(self) -> int:
        """Lifetime of a signed token in seconds."""
        return self.expiration_minutes * 60

    # -------------------------------------------------------------------------
    # Signing
    # -------------------------------------------------------------------------

    def sign(self, claims: Union[ClaimSet, Dict[str, Any]]) -> str:
        """
        Sign a claim set.

        iss, iat and exp are always set here. aud is the claim set's
        applications followed by the configured audience, so tokens issued
        here always pass verify() with its default audience.

        Raises:
            TokenSigningError: If the claim set lacks a subject or encoding fails
        """
        payload = claims.to_payload() if isinstance(claims, ClaimSet) else dict(claims)

        if not payload.get("sub"):
            raise TokenSigningError("Missing required claim: 'sub'")

        for reserved in ("iss", "iat", "exp", "nbf"):
            payload.pop(reserved, None)

        audience = _as_list(payload.pop("aud", None))
        audience += [aud for aud in self.audience if aud not in audience]
        if audience:
            payload["aud"] = audience

        now = datetime.now(timezone.utc)
        payload.update({
            "iss": self.issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=self.expiration_minutes)).timestamp()),
        })

        try:
            token = jwt.encode(
                payload,
                self._private_key,
                algorithm=ALGORITHM,
                headers={"kid": self.key_id},
            )
        except Exception as e:
            logger.error(f"Failed to sign token: {e}", exc_info=True)
            raise TokenSigningError(f"Failed to sign token: {e}") from e

        logger.debug(
            "Signed platform token",
            extra={"sub": payload["sub"], "expires_in_minutes": self.expiration_minutes},
        )
        return token

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify(self, token: str, audience: Optional[Union[str, List[str]]] = None) -> Dict[str, Any]:
        """
        Verify signature, issuer, audience and expiry.

        Args:
            token: Compact JWT
            audience: Accepted audience(s). Defaults to the configured
                audience; when neither is set, aud is not checked.

        Raises:
            TokenExpiredError: exp has passed
            TokenInvalidError: anything else
        """
        if not token:
            raise TokenInvalidError("No token provided")

        accepted = audience if audience is not None else (self.audience or None)

        try:
            return jwt.decode(
                token,
                self._public_key,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                audience=accepted,
                options={
                    "verify_aud": accepted is not None,
                    "require": ["exp", "iat", "iss", "sub"],
                },
            )
        except ExpiredSignatureError as e:
            raise TokenExpiredError("Token has expired") from e
        except InvalidTokenError as e:
            raise TokenInvalidError(f"Invalid token: {e}") from e

    # -------------------------------------------------------------------------
    # Key publication
    # -------------------------------------------------------------------------

    def publish_keys(self) -> Dict[str, Any]:
        """Public key set in JWKS format. Never contains private material."""
        jwk = RSAAlgorithm.to_jwk(self._public_key, as_dict=True)
        jwk.update({"kid": self.key_id, "use": "sig", "alg": ALGORITHM})
        return {"keys": [jwk]}


# =============================================================================
# Helper Functions
# =============================================================================

def extract_token_from_header(authorization: Optional[str]) -> str:
    """
    Extract Bearer token from Authorization header.

    Raises:
        HTTPException: If header is missing or malformed
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()

    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format. Expected: 'Bearer <token>'",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return parts[1]


# =============================================================================
# FastAPI Dependencies
# =============================================================================

async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """
    FastAPI dependency to extract and verify a platform token.

    Usage in routes:
        @router.get("/protected")
        async def protected_route(user: dict = Depends(get_current_user)):
            return {"email": user["identity"]["email"]}

    Raises:
        HTTPException: 401 if the token is missing, expired or invalid
    """
    token = extract_token_from_header(authorization)
    signer: TokenSigner = request.app.state.app_state.signer

    try:
        return signer.verify(token)
    except TokenExpiredError:
        logger.warning("Platform token expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except TokenInvalidError as e:
        logger.warning(f"Invalid platform token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_app_role(app_name: str, *roles: str):
    """
    Dependency factory requiring a role within one application's claims.

    Usage:
        @router.get("/pulse/admin")
        async def admin(user: dict = Depends(require_app_role("pulse", "PRODUCER"))):
            ...

    With no roles given, any entry for the application is accepted.
    """
    async def dependency(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        app_claims = (user.get("apps") or {}).get(app_name)
        if not app_claims:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"No access to application '{app_name}'",
            )

        if roles and not set(roles) & set(app_claims.get("roles") or []):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of roles {list(roles)} in '{app_name}'",
            )
        return user

    return dependency


__all__ = [
    "TokenSigner",
    "TokenSigningError",
    "TokenVerificationError",
    "TokenExpiredError",
    "TokenInvalidError",
    "compute_key_id",
    "extract_token_from_header",
    "get_current_user",
    "require_app_role",
]
