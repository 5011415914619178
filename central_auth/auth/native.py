"""
Entra External ID (CIAM) native authentication client.

Wraps the native-auth HTTP API used by password login, sign-up and password
reset. Every call returns a `StageResult` whose `outcome` says how the flow
may proceed; responses the API uses to ask for the next credential
(`credential_required`, `attributes_required`) are outcomes of their own and
are not treated as failures here.

Request and response bodies are logged with secrets redacted.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from jose import JWTError

from central_auth.auth.claims import IdentityProviderUser
from central_auth.auth.errors import ErrorKind, IdentityProviderError
from central_auth.auth.providers import response_json, send_request
from central_auth.auth.utils import (
    decode_token_without_verification,
    email_local_part,
    redact_fields,
)

logger = logging.getLogger(__name__)


SIGN_IN_CHALLENGE_TYPES = "password redirect"
SIGNUP_CHALLENGE_TYPES = "oob password redirect"
RESET_CHALLENGE_TYPES = "oob redirect"
TOKEN_SCOPE = "openid offline_access"


# =============================================================================
# Stage Results
# =============================================================================

class StageOutcome(str, Enum):
    """How a native-auth stage ended."""
    SUCCESS = "success"
    CREDENTIAL_REQUIRED = "credential_required"
    ATTRIBUTES_REQUIRED = "attributes_required"
    REDIRECT_REQUIRED = "redirect_required"
    REJECTED = "rejected"


@dataclass
class StageResult:
    step: str
    outcome: StageOutcome
    status_code: int
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def continuation_token(self) -> Optional[str]:
        return self.data.get("continuation_token") or self.data.get("continuation_token_new")

    @property
    def error(self) -> Optional[str]:
        return self.data.get("error")

    @property
    def suberror(self) -> Optional[str]:
        return self.data.get("suberror")

    @property
    def error_description(self) -> str:
        return self.data.get("error_description") or ""

    def to_error(self, kind: ErrorKind = ErrorKind.USER_INPUT) -> IdentityProviderError:
        return IdentityProviderError(
            kind,
            self.error or self.outcome.value,
            self.error_description,
            suberror=self.suberror,
        )


@dataclass
class NativeTokens:
    """Tokens returned by the native-auth token endpoint."""
    id_token: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None

    def id_claims(self) -> Dict[str, Any]:
        """
        Claims of the ID token.

        Raises:
            IdentityProviderError: If the ID token cannot be decoded
        """
        try:
            return decode_token_without_verification(self.id_token)
        except JWTError as e:
            raise IdentityProviderError(ErrorKind.USER_INPUT, "invalid_id_token", str(e)) from e


def user_from_id_claims(
    claims: Dict[str, Any],
    fallback_email: str = "",
    fallback_name: Optional[str] = None,
    role_attribute: Optional[str] = None,
) -> IdentityProviderUser:
    """
    Build an IdentityProviderUser from native-auth ID token claims.

    Email and name fall back to what the caller supplied in the request.
    """
    email = claims.get("email") or claims.get("preferred_username") or fallback_email
    name = (
        claims.get("name")
        or claims.get("given_name")
        or fallback_name
        or email_local_part(email)
        or "Unknown"
    )
    persona = claims.get("Persona") or claims.get("persona")
    if not persona and role_attribute:
        persona = claims.get(role_attribute)

    return IdentityProviderUser(
        object_id=claims.get("oid") or claims.get("sub") or "",
        email=(email or "").strip().lower(),
        name=name,
        roles=list(claims.get("roles") or []),
        persona_code=persona,
    )


# =============================================================================
# Client
# =============================================================================

class NativeAuthClient:
    """Form-encoded calls to the CIAM native authentication endpoints."""

    def __init__(self, base_url: Optional[str], client_id: str, http_client: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.client_id = client_id
        self.http = http_client

    @property
    def configured(self) -> bool:
        return self.base_url is not None

    async def _post(self, step: str, path: str, form: Dict[str, Any]) -> StageResult:
        """
        POST one stage and classify the response.

        Raises:
            IdentityProviderError: CONFIGURATION when no CIAM tenant is set,
                TRANSIENT on timeouts, network errors and 5xx responses
        """
        if not self.configured:
            raise IdentityProviderError(ErrorKind.CONFIGURATION, "native_auth_unavailable", "TENANT_NAME is not set")

        body = {"client_id": self.client_id, **form}
        logger.debug(f"Native auth {step} request", extra={"step": step, "body": redact_fields(body)})

        response = await send_request(
            self.http,
            "POST",
            f"{self.base_url}/{path}",
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        data = response_json(response)

        logger.debug(
            f"Native auth {step} response",
            extra={"step": step, "status": response.status_code, "body": redact_fields(data)},
        )

        if response.status_code >= 500:
            raise IdentityProviderError(
                ErrorKind.TRANSIENT,
                data.get("error") or f"http_{response.status_code}",
                data.get("error_description") or "Identity provider error",
            )

        return StageResult(step=step, outcome=self._classify(response.status_code, data), status_code=response.status_code, data=data)

    @staticmethod
    def _classify(status_code: int, data: Dict[str, Any]) -> StageOutcome:
        if status_code == 200:
            if data.get("challenge_type") == "redirect":
                return StageOutcome.REDIRECT_REQUIRED
            return StageOutcome.SUCCESS

        error = data.get("error")
        if error == "credential_required":
            return StageOutcome.CREDENTIAL_REQUIRED
        if error == "attributes_required":
            return StageOutcome.ATTRIBUTES_REQUIRED
        return StageOutcome.REJECTED

    # -------------------------------------------------------------------------
    # Password sign-in
    # -------------------------------------------------------------------------

    async def sign_in(self, username: str, password: str) -> NativeTokens:
        """
        Run initiate -> challenge -> token for a username and password.

        Raises:
            IdentityProviderError: USER_INPUT naming the failed stage in
                `description`, or TRANSIENT / CONFIGURATION
        """
        initiate = await self._post("initiate", "oauth2/v2.0/initiate", {
            "challenge_type": SIGN_IN_CHALLENGE_TYPES,
            "username": username,
        })
        self._require_token(initiate)

        challenge = await self._post("challenge", "oauth2/v2.0/challenge", {
            "challenge_type": SIGN_IN_CHALLENGE_TYPES,
            "continuation_token": initiate.continuation_token,
        })
        self._require_token(challenge)

        token = await self._post("token", "oauth2/v2.0/token", {
            "grant_type": "password",
            "continuation_token": challenge.continuation_token,
            "password": password,
            "scope": TOKEN_SCOPE,
        })
        return self._tokens(token)

    async def redeem_continuation_token(self, continuation_token: str, username: str) -> NativeTokens:
        """Trade the final continuation token of a flow for tokens."""
        result = await self._post("token", "oauth2/v2.0/token", {
            "grant_type": "continuation_token",
            "continuation_token": continuation_token,
            "username": username,
            "scope": TOKEN_SCOPE,
        })
        return self._tokens(result)

    # -------------------------------------------------------------------------
    # Sign-up
    # -------------------------------------------------------------------------

    async def signup_start(self, email: str) -> StageResult:
        return await self._post("signup_start", "signup/v1.0/start", {
            "challenge_type": SIGNUP_CHALLENGE_TYPES,
            "username": email,
        })

    async def signup_challenge(self, continuation_token: str) -> StageResult:
        return await self._post("signup_challenge", "signup/v1.0/challenge", {
            "challenge_type": SIGNUP_CHALLENGE_TYPES,
            "continuation_token": continuation_token,
        })

    async def signup_submit_code(self, continuation_token: str, code: str) -> StageResult:
        return await self._post("signup_continue_oob", "signup/v1.0/continue", {
            "grant_type": "oob",
            "continuation_token": continuation_token,
            "oob": code,
        })

    async def signup_submit_password(self, continuation_token: str, password: str) -> StageResult:
        return await self._post("signup_continue_password", "signup/v1.0/continue", {
            "grant_type": "password",
            "continuation_token": continuation_token,
            "password": password,
        })

    async def signup_submit_attributes(self, continuation_token: str, attributes: Dict[str, Any]) -> StageResult:
        return await self._post("signup_continue_attributes", "signup/v1.0/continue", {
            "grant_type": "attributes",
            "continuation_token": continuation_token,
            "attributes": json.dumps(attributes),
        })

    # -------------------------------------------------------------------------
    # Password reset
    # -------------------------------------------------------------------------

    async def reset_start(self, email: str) -> StageResult:
        return await self._post("reset_start", "resetpassword/v1.0/start", {
            "challenge_type": RESET_CHALLENGE_TYPES,
            "username": email,
        })

    async def reset_challenge(self, continuation_token: str) -> StageResult:
        return await self._post("reset_challenge", "resetpassword/v1.0/challenge", {
            "challenge_type": RESET_CHALLENGE_TYPES,
            "continuation_token": continuation_token,
        })

    async def reset_submit_code(self, continuation_token: str, code: str) -> StageResult:
        return await self._post("reset_continue_oob", "resetpassword/v1.0/continue", {
            "grant_type": "oob",
            "continuation_token": continuation_token,
            "oob": code,
        })

    async def reset_submit_password(self, continuation_token: str, new_password: str) -> StageResult:
        return await self._post("reset_submit", "resetpassword/v1.0/submit", {
            "continuation_token": continuation_token,
            "new_password": new_password,
        })

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _require_token(result: StageResult) -> None:
        if result.outcome != StageOutcome.SUCCESS or not result.continuation_token:
            logger.info(f"Native auth stage {result.step} failed: {result.error or result.outcome.value}")
            raise IdentityProviderError(
                ErrorKind.USER_INPUT,
                result.error or result.outcome.value,
                f"{result.step}: {result.error_description}",
                suberror=result.suberror,
            )

    @staticmethod
    def _tokens(result: StageResult) -> NativeTokens:
        if result.outcome != StageOutcome.SUCCESS or not result.data.get("id_token"):
            logger.info(f"Native auth stage {result.step} failed: {result.error or 'no id_token'}")
            raise IdentityProviderError(
                ErrorKind.USER_INPUT,
                result.error or "token_failed",
                f"{result.step}: {result.error_description}",
                suberror=result.suberror,
            )

        expires_in = result.data.get("expires_in")
        return NativeTokens(
            id_token=result.data["id_token"],
            access_token=result.data.get("access_token"),
            refresh_token=result.data.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
        )
