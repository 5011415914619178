"""
Native Authentication Client Tests

Tests stage classification, continuation-token threading, error kinds and
log redaction of the CIAM native-auth client.
"""

import httpx
import pytest

from central_auth.auth.errors import ErrorKind, IdentityProviderError
from central_auth.auth.native import (
    NativeAuthClient,
    NativeTokens,
    StageOutcome,
    user_from_id_claims,
)
from central_auth.auth.utils import redact_email, redact_fields
from conftest import CLIENT_ID, ENTRA_HOST, NATIVE_PREFIX, OTP, create_mock_id_token

BASE_URL = f"https://{ENTRA_HOST}{NATIVE_PREFIX}"


@pytest.fixture
def native(idp):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(idp.handler))
    return NativeAuthClient(BASE_URL, CLIENT_ID, http_client)


class TestStageClassification:
    """Test suite for mapping responses to stage outcomes"""

    @pytest.mark.asyncio
    async def test_credential_required_is_an_outcome(self, native):
        start = await native.signup_start("new@example.com")
        challenge = await native.signup_challenge(start.continuation_token)

        result = await native.signup_submit_code(challenge.continuation_token, OTP)

        assert result.outcome == StageOutcome.CREDENTIAL_REQUIRED
        assert result.status_code == 400
        assert result.continuation_token == "signup-oob.new@example.com"

    @pytest.mark.asyncio
    async def test_attributes_required_is_an_outcome(self, native):
        result = await native.signup_submit_password("signup-oob.new@example.com", "LongEnough1!")

        assert result.outcome == StageOutcome.ATTRIBUTES_REQUIRED
        assert result.continuation_token

    @pytest.mark.asyncio
    async def test_rejection_keeps_error_details(self, native):
        result = await native.signup_submit_password("signup-oob.new@example.com", "short")

        assert result.outcome == StageOutcome.REJECTED
        assert result.error == "invalid_grant"
        assert result.suberror == "password_too_weak"
        assert result.to_error().kind == ErrorKind.USER_INPUT

    @pytest.mark.asyncio
    async def test_redirect_challenge(self):
        def handler(request):
            return httpx.Response(200, json={"challenge_type": "redirect"})

        native = NativeAuthClient(BASE_URL, CLIENT_ID, httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        result = await native.reset_start("a@b.com")

        assert result.outcome == StageOutcome.REDIRECT_REQUIRED

    @pytest.mark.asyncio
    async def test_requests_carry_client_id(self, native, idp):
        await native.reset_start("a@b.com")

        assert b"client_id=" + CLIENT_ID.encode() in idp.requests[-1].content
        assert idp.requests[-1].headers["content-type"] == "application/x-www-form-urlencoded"


class TestSignIn:
    """Test suite for initiate -> challenge -> token"""

    @pytest.mark.asyncio
    async def test_sign_in(self, native, idp):
        idp.users["bob@example.com"] = "Password1!"

        tokens = await native.sign_in("bob@example.com", "Password1!")

        assert tokens.id_claims()["email"] == "bob@example.com"
        assert tokens.expires_in == 3600
        assert [r.url.path.rsplit("/", 1)[-1] for r in idp.requests] == ["initiate", "challenge", "token"]

    @pytest.mark.asyncio
    async def test_unknown_user_fails_at_initiate(self, native):
        with pytest.raises(IdentityProviderError) as exc_info:
            await native.sign_in("ghost@example.com", "x")

        assert exc_info.value.kind == ErrorKind.USER_INPUT
        assert exc_info.value.code == "user_not_found"
        assert exc_info.value.description.startswith("initiate:")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, native, idp):
        idp.unavailable = True

        with pytest.raises(IdentityProviderError) as exc_info:
            await native.sign_in("bob@example.com", "x")

        assert exc_info.value.kind == ErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        native = NativeAuthClient(BASE_URL, CLIENT_ID, httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        with pytest.raises(IdentityProviderError) as exc_info:
            await native.sign_in("bob@example.com", "x")

        assert exc_info.value.kind == ErrorKind.TRANSIENT
        assert exc_info.value.code == "network_error"

    @pytest.mark.asyncio
    async def test_unconfigured_client(self):
        native = NativeAuthClient(None, CLIENT_ID, httpx.AsyncClient())

        assert not native.configured
        with pytest.raises(IdentityProviderError) as exc_info:
            await native.sign_in("bob@example.com", "x")
        assert exc_info.value.kind == ErrorKind.CONFIGURATION


class TestIdTokenClaims:
    """Test suite for reading users out of native-auth ID tokens"""

    def test_user_from_claims(self):
        claims = {"oid": "oid-1", "email": "Bob@Example.com", "name": "Bob", "extension_role": "P1004"}

        user = user_from_id_claims(claims, role_attribute="extension_role")

        assert user.object_id == "oid-1"
        assert user.email == "bob@example.com"
        assert user.name == "Bob"
        assert user.persona_code == "P1004"

    def test_fallbacks(self):
        user = user_from_id_claims({"sub": "sub-1"}, fallback_email="carol@example.com", fallback_name="Carol")

        assert user.object_id == "sub-1"
        assert user.email == "carol@example.com"
        assert user.name == "Carol"

    def test_name_defaults_to_email_local_part(self):
        assert user_from_id_claims({"sub": "s", "email": "dave@example.com"}).name == "dave"

    def test_malformed_id_token(self):
        with pytest.raises(IdentityProviderError) as exc_info:
            NativeTokens(id_token="not-a-jwt").id_claims()

        assert exc_info.value.code == "invalid_id_token"

    def test_id_claims_decoded(self):
        tokens = NativeTokens(id_token=create_mock_id_token({"oid": "oid-9", "email": "e@example.com"}))

        assert tokens.id_claims()["oid"] == "oid-9"


class TestRedaction:
    """Test suite for log redaction"""

    def test_secrets_redacted(self):
        body = {
            "client_id": CLIENT_ID,
            "username": "alice@example.com",
            "password": "hunter2",
            "continuation_token": "ct",
            "oob": "123456",
            "grant_type": "password",
        }

        redacted = redact_fields(body)

        assert redacted["password"] == "[REDACTED]"
        assert redacted["continuation_token"] == "[REDACTED]"
        assert redacted["oob"] == "[REDACTED]"
        assert redacted["username"] == "al***@example.com"
        assert redacted["grant_type"] == "password"
        assert body["password"] == "hunter2"

    @pytest.mark.parametrize("email,expected", [
        ("alice@example.com", "al***@example.com"),
        ("a@b.com", "a***@b.com"),
        ("", "***"),
        (None, "***"),
        ("no-at-sign", "***"),
    ])
    def test_redact_email(self, email, expected):
        assert redact_email(email) == expected
