"""
Error types shared by the authentication flows.

`AuthError` is what routes and orchestrators raise; the application renders
it as the `{error, error_description}` JSON body every endpoint returns on
failure. `IdentityProviderError` describes a failed outbound call before it
has been mapped to a caller-facing error.
"""

from enum import Enum
from typing import Any, Dict, Optional

from fastapi import status


# =============================================================================
# Caller-facing Errors
# =============================================================================

class AuthError(Exception):
    """
    An error that is safe to return to the caller as JSON.

    Keyword arguments other than `headers` are added to the response body.
    """

    def __init__(
        self,
        status_code: int,
        error: str,
        error_description: str,
        headers: Optional[Dict[str, str]] = None,
        **extra: Any,
    ):
        super().__init__(error_description)
        self.status_code = status_code
        self.error = error
        self.error_description = error_description
        self.headers = headers
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "error": self.error,
            "error_description": self.error_description,
        }
        body.update(self.extra)
        return body


def invalid_request(description: str, **extra: Any) -> AuthError:
    return AuthError(status.HTTP_400_BAD_REQUEST, "invalid_request", description, **extra)


def invalid_grant(description: str, status_code: int = status.HTTP_400_BAD_REQUEST, **extra: Any) -> AuthError:
    return AuthError(status_code, "invalid_grant", description, **extra)


def expired_token(description: str, **extra: Any) -> AuthError:
    return AuthError(status.HTTP_401_UNAUTHORIZED, "expired_token", description, **extra)


# =============================================================================
# Identity Provider Errors
# =============================================================================

class ErrorKind(str, Enum):
    """Classification of a failed identity provider call."""

    USER_INPUT = "user_input"
    TRANSIENT = "transient"
    CONFIGURATION = "configuration"


class IdentityProviderError(Exception):
    """
    A failed call to an identity provider.

    Attributes:
        kind: USER_INPUT when the provider rejected what the user supplied,
              TRANSIENT for timeouts and network failures, CONFIGURATION when
              this service is not set up for the call.
        code: Provider error code (e.g. 'invalid_grant') or a local one.
        description: Provider description; logged, not returned verbatim.
        suberror: Provider suberror (e.g. 'password_too_weak'), if any.
    """

    def __init__(
        self,
        kind: ErrorKind,
        code: str,
        description: str = "",
        suberror: Optional[str] = None,
    ):
        super().__init__(f"{code}: {description}" if description else code)
        self.kind = kind
        self.code = code
        self.description = description
        self.suberror = suberror


def provider_unavailable(exc: IdentityProviderError) -> AuthError:
    """Map a transient or configuration failure to a 503 response."""
    if exc.kind == ErrorKind.CONFIGURATION:
        return AuthError(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "native_auth_unavailable",
            "Native authentication is not configured",
        )
    return AuthError(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "temporarily_unavailable",
        "The identity provider could not be reached. Please try again.",
    )
