"""
Shared fixtures for the central auth test suite.

Identity providers are replaced by an in-memory fake served through
httpx.MockTransport, the datastore by an in-memory implementation of the
Datastore protocol, and the store clock by a clock the tests advance.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from central_auth.auth.signer import TokenSigner
from central_auth.config import Settings
from central_auth.db import DatastoreClaims, DatastoreError, PersonaAssignment, Prospect, RegistrationJourney
from central_auth.db.datastore import PERSONA_APP_SLUGS, normalize_persona_code
from central_auth.main import create_app


TENANT_ID = "11111111-2222-3333-4444-555555555555"
CLIENT_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
TENANT_NAME = "contoso"
ENTRA_HOST = f"{TENANT_NAME}.ciamlogin.com"
ENTRA_ISSUER = f"https://{TENANT_ID}.ciamlogin.com/{TENANT_ID}/v2.0"
NATIVE_PREFIX = f"/{TENANT_NAME}.onmicrosoft.com/"
REDIRECT_URI = "https://app1.example.com/cb"
SECOND_REDIRECT_URI = "https://app2.example.com/auth/done"
OTP = "123456"


# Test RSA key pair generation for signing and for the fake identity provider
def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )
    public_key = private_key.public_key()

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )

    public_pem = public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return private_pem.decode(), public_pem.decode()


# Generate test keys once for reuse
TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()
IDP_PRIVATE_KEY, IDP_PUBLIC_KEY = generate_test_keys()
IDP_KID = "idp-key-2024"


def create_mock_id_token(claims: Dict[str, Any], kid: str = IDP_KID, exp_delta_minutes: int = 60) -> str:
    """
    Create an ID token signed with the fake identity provider's key.

    Args:
        claims: Claims to add; 'oid' doubles as the subject
        kid: Key ID for JWKS matching
        exp_delta_minutes: Token expiry in minutes
    """
    now = datetime.now(timezone.utc)
    payload = {
        "iss": ENTRA_ISSUER,
        "sub": claims.get("oid") or claims.get("sub") or "test-user-sub-123",
        "aud": CLIENT_ID,
        "exp": now + timedelta(minutes=exp_delta_minutes),
        "iat": now,
        **claims,
    }

    headers = {
        "kid": kid,
        "alg": "RS256"
    }

    return jwt.encode(payload, IDP_PRIVATE_KEY, algorithm="RS256", headers=headers)


def create_mock_jwks(kid: str = IDP_KID) -> Dict[str, Any]:
    """JWKS document with the fake identity provider's public key."""
    public_key_obj = serialization.load_pem_public_key(
        IDP_PUBLIC_KEY.encode(),
        backend=default_backend()
    )

    jwk = RSAAlgorithm.to_jwk(public_key_obj, as_dict=True)
    jwk['kid'] = kid
    jwk['use'] = 'sig'
    jwk['alg'] = 'RS256'

    return {
        "keys": [jwk]
    }


def build_settings(**overrides: Any) -> Settings:
    """Settings for tests; never reads a .env file."""
    values: Dict[str, Any] = {
        "TENANT_ID": TENANT_ID,
        "CLIENT_ID": CLIENT_ID,
        "CLIENT_SECRET": "test-client-secret",
        "TENANT_NAME": TENANT_NAME,
        "REDIRECT_URIS": f"{REDIRECT_URI},{SECOND_REDIRECT_URI}",
        "JWT_PRIVATE_KEY": TEST_PRIVATE_KEY,
        "JWT_PUBLIC_KEY": TEST_PUBLIC_KEY,
        "HTTPS_ENABLED": False,
        "RESET_SIGN_IN_DELAY_SECONDS": 0,
        "RESET_SIGN_IN_RETRY_DELAY_SECONDS": 0,
        "LOG_LEVEL": "DEBUG",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# =============================================================================
# Fake Clock
# =============================================================================

class FakeClock:
    """Monotonic clock that only moves when a test advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fake Datastore
# =============================================================================

PERSONA_NAMES = {
    "P1001": "Artist",
    "P1002": "Manager",
    "P1003": "Publicist",
    "P1004": "Producer",
}

STEP_NAMES = {
    10: "PROSPECT_CREATED",
    20: "OTP_SENT",
    30: "OTP_VERIFIED",
    40: "PASSWORD_SET",
    50: "PERSON_ID_GENERATED",
    60: "SIGNUP_COMPLETED",
}


class FakeDatastore:
    """In-memory Datastore. Set `failing` to make every call raise DatastoreError."""

    def __init__(self, configured: bool = True):
        self._configured = configured
        self.failing = False
        self.people: Dict[str, DatastoreClaims] = {}
        self.provisioned: List[Dict[str, Any]] = []
        self.prospects: Dict[str, Prospect] = {}
        self.journeys: List[RegistrationJourney] = []

    @property
    def configured(self) -> bool:
        return self._configured

    def _check(self) -> None:
        if self.failing:
            raise DatastoreError("connection refused")

    def add_person(self, email: str, persona_code: str = "P1004", status: str = "Active") -> DatastoreClaims:
        claims = DatastoreClaims(
            person_id=uuid.uuid4().hex,
            status=status,
            email=email,
            display_name=email.split("@")[0],
            assignments=[
                PersonaAssignment(app_slug=slug, persona_code=persona_code, persona_name=PERSONA_NAMES[persona_code])
                for slug in PERSONA_APP_SLUGS[persona_code]
            ],
        )
        self.people[email] = claims
        return claims

    async def get_claims_by_email(self, email: str) -> Optional[DatastoreClaims]:
        self._check()
        if not self._configured:
            return None
        return self.people.get(email)

    async def provision_person(
        self,
        idp_subject: str,
        email: str,
        name: str,
        role_hint: Optional[str] = None,
    ) -> Optional[str]:
        self._check()
        if not self._configured or email in self.people:
            return None
        persona_code = normalize_persona_code(role_hint)
        claims = self.add_person(email, persona_code)
        self.provisioned.append({"entra_id": idp_subject, "email": email, "name": name, "persona_code": persona_code})
        return claims.person_id

    async def get_prospect_by_email(self, email: str) -> Optional[Prospect]:
        self._check()
        if not self._configured:
            return None
        return self.prospects.get(email.strip().lower())

    async def create_prospect(
        self,
        email: str,
        entry_route: Optional[str] = "invite",
        created_by: Optional[str] = "system",
        person_uuid: Optional[str] = None,
        update_only: bool = False,
    ) -> Optional[Prospect]:
        self._check()
        if not self._configured:
            return None

        email = email.strip().lower()
        existing = self.prospects.get(email)
        if update_only:
            if existing is None:
                return None
            existing.entry_route = entry_route or existing.entry_route
            existing.created_by = created_by or existing.created_by
            existing.person_uuid = person_uuid
            existing.updated_at = datetime.now(timezone.utc)
            return existing

        prospect = Prospect(
            prospect_id=existing.prospect_id if existing else len(self.prospects) + 1,
            email=email,
            entry_route=entry_route,
            person_uuid=person_uuid,
            created_by=created_by,
            created_at=datetime.now(timezone.utc),
        )
        self.prospects[email] = prospect
        return prospect

    def _add_journey(self, prospect_id: int, step_id: Optional[int], status: str, metadata: Any) -> RegistrationJourney:
        journey = RegistrationJourney(
            journey_id=len(self.journeys) + 1,
            prospect_id=prospect_id,
            current_step_id=step_id,
            status=status,
            metadata=metadata,
            started_at=datetime.now(timezone.utc),
        )
        self.journeys.append(journey)
        return journey

    async def create_journey(
        self,
        prospect_id: int,
        step_name: str = "OTP_VERIFICATION",
        status: str = "IN_PROGRESS",
        metadata: Any = None,
    ) -> Optional[RegistrationJourney]:
        self._check()
        if not any(p.prospect_id == prospect_id for p in self.prospects.values()):
            return None
        step_id = next((sid for sid, name in STEP_NAMES.items() if name == step_name), None)
        return self._add_journey(prospect_id, step_id, status, metadata)

    async def record_journey_step(self, prospect_id: int, step_id: int, status: str = "COMPLETED") -> Optional[RegistrationJourney]:
        self._check()
        return self._add_journey(prospect_id, step_id, status, None)

    async def latest_journey(self, prospect_id: int) -> Optional[RegistrationJourney]:
        self._check()
        matching = [j for j in self.journeys if j.prospect_id == prospect_id]
        return matching[-1] if matching else None

    async def step_name(self, step_id: int) -> Optional[str]:
        self._check()
        return STEP_NAMES.get(step_id)

    def steps_for(self, email: str) -> List[tuple]:
        prospect = self.prospects.get(email)
        if prospect is None:
            return []
        return [(j.current_step_id, j.status) for j in self.journeys if j.prospect_id == prospect.prospect_id]


# =============================================================================
# Fake Identity Provider
# =============================================================================

def _continuation(stage: str, email: str) -> str:
    return f"{stage}.{email}"


def _email_from(token: str) -> str:
    return token.split(".", 1)[-1]


class FakeIdentityProvider:
    """
    Entra ID (redirect flow and native auth) and Google endpoints.

    Continuation tokens have the form '<stage>.<email>' so each stage can
    tell whose flow it is continuing.
    """

    def __init__(self):
        self.codes: Dict[str, Dict[str, Any]] = {}
        self.google_codes: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, str] = {}
        self.pending_passwords: Dict[str, str] = {}
        self.signup_attributes: Dict[str, Dict[str, Any]] = {}
        self.stale_password_attempts = 0
        self.native_rejections: Dict[str, Dict[str, Any]] = {}
        self.attributes_rejection: Optional[Dict[str, Any]] = None
        self.unavailable = False
        self.requests: List[httpx.Request] = []

    # -------------------------------------------------------------------------
    # Test setup helpers
    # -------------------------------------------------------------------------

    def authorization_code(
        self,
        nonce: str,
        email: str = "alice@example.com",
        oid: str = "entra-oid-alice",
        name: str = "Alice Example",
        **extra: Any,
    ) -> str:
        code = f"entra-code-{len(self.codes) + 1}"
        self.codes[code] = {"nonce": nonce, "email": email, "oid": oid, "name": name, **extra}
        return code

    def google_authorization_code(self, nonce: str, email: str = "gina@example.com", sub: str = "google-sub-1") -> str:
        code = f"google-code-{len(self.google_codes) + 1}"
        self.google_codes[code] = {"nonce": nonce, "email": email, "sub": sub, "name": "Gina Google"}
        return code

    def paths_called(self, host: Optional[str] = None) -> List[str]:
        return [r.url.path for r in self.requests if host is None or r.url.host == host]

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unavailable:
            return httpx.Response(503, json={"error": "temporarily_unavailable"})

        form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        host, path = request.url.host, request.url.path

        if host == ENTRA_HOST and path == f"/{TENANT_ID}/discovery/v2.0/keys":
            return httpx.Response(200, json=create_mock_jwks())
        if host == ENTRA_HOST and path == f"/{TENANT_ID}/oauth2/v2.0/token":
            return self._entra_token(form)
        if host == ENTRA_HOST and path.startswith(NATIVE_PREFIX):
            return self._native(path[len(NATIVE_PREFIX):], form)
        if host == "oauth2.googleapis.com" and path == "/token":
            return self._google_token(form)

        return httpx.Response(404, json={"error": "not_found"})

    def _entra_token(self, form: Dict[str, str]) -> httpx.Response:
        claims = self.codes.pop(form.get("code", ""), None)
        if claims is None or not form.get("code_verifier"):
            return httpx.Response(400, json={
                "error": "invalid_grant",
                "error_description": "AADSTS70008: The provided authorization code has expired.",
            })
        return httpx.Response(200, json={
            "token_type": "Bearer",
            "id_token": create_mock_id_token(claims),
        })

    def _google_token(self, form: Dict[str, str]) -> httpx.Response:
        claims = self.google_codes.pop(form.get("code", ""), None)
        if claims is None:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad Request"})
        id_token = jwt.encode(
            {"iss": "https://accounts.google.com", "aud": "google-client", **claims},
            IDP_PRIVATE_KEY,
            algorithm="RS256",
        )
        return httpx.Response(200, json={"token_type": "Bearer", "id_token": id_token})

    def _native_tokens(self, email: str) -> httpx.Response:
        attributes = self.signup_attributes.get(email, {})
        claims = {"oid": f"oid-{email}", "email": email}
        if attributes.get("displayName"):
            claims["name"] = attributes["displayName"]
        return httpx.Response(200, json={
            "token_type": "Bearer",
            "id_token": create_mock_id_token(claims),
            "access_token": "native-access-token",
            "refresh_token": "native-refresh-token",
            "expires_in": 3600,
        })

    def _native(self, path: str, form: Dict[str, str]) -> httpx.Response:
        email = form.get("username") or _email_from(form.get("continuation_token", ""))
        grant_type = form.get("grant_type")

        if path in self.native_rejections:
            return httpx.Response(400, json=self.native_rejections[path])

        if path == "signup/v1.0/start":
            if email in self.users:
                return httpx.Response(400, json={"error": "user_already_exists", "error_description": "AADSTS1003037"})
            return httpx.Response(200, json={"continuation_token": _continuation("signup-start", email)})

        if path == "signup/v1.0/challenge":
            return httpx.Response(200, json={
                "challenge_type": "oob",
                "continuation_token": _continuation("signup-challenge", email),
            })

        if path == "signup/v1.0/continue":
            if grant_type == "oob":
                if form.get("oob") != OTP:
                    return httpx.Response(400, json={"error": "invalid_grant", "suberror": "invalid_oob_value"})
                return httpx.Response(400, json={
                    "error": "credential_required",
                    "continuation_token": _continuation("signup-oob", email),
                })
            if grant_type == "password":
                if len(form.get("password", "")) < 8:
                    return httpx.Response(400, json={"error": "invalid_grant", "suberror": "password_too_weak"})
                self.pending_passwords[email] = form["password"]
                return httpx.Response(400, json={
                    "error": "attributes_required",
                    "continuation_token": _continuation("signup-password", email),
                })
            if grant_type == "attributes":
                if self.attributes_rejection is not None:
                    return httpx.Response(400, json=self.attributes_rejection)
                self.signup_attributes[email] = json.loads(form.get("attributes", "{}"))
                return httpx.Response(200, json={"continuation_token": _continuation("signup-attributes", email)})

        if path == "oauth2/v2.0/initiate":
            if email not in self.users:
                return httpx.Response(400, json={"error": "user_not_found", "error_description": "AADSTS50034"})
            return httpx.Response(200, json={"continuation_token": _continuation("signin-initiate", email)})

        if path == "oauth2/v2.0/challenge":
            return httpx.Response(200, json={
                "challenge_type": "password",
                "continuation_token": _continuation("signin-challenge", email),
            })

        if path == "oauth2/v2.0/token":
            if grant_type == "continuation_token":
                if email in self.pending_passwords:
                    self.users[email] = self.pending_passwords.pop(email)
                return self._native_tokens(email)
            if self.stale_password_attempts > 0:
                self.stale_password_attempts -= 1
                return httpx.Response(400, json={
                    "error": "invalid_grant",
                    "error_description": "AADSTS50055: The password is expired.",
                })
            if self.users.get(email) != form.get("password"):
                return httpx.Response(400, json={
                    "error": "invalid_grant",
                    "error_description": "AADSTS50126: Error validating credentials due to invalid username or password.",
                    "suberror": "invalid_password" if email in self.users else None,
                })
            return self._native_tokens(email)

        if path == "resetpassword/v1.0/start":
            if email not in self.users:
                return httpx.Response(400, json={"error": "user_not_found", "error_description": "AADSTS50034"})
            return httpx.Response(200, json={"continuation_token": _continuation("reset-start", email)})

        if path == "resetpassword/v1.0/challenge":
            return httpx.Response(200, json={
                "challenge_type": "oob",
                "continuation_token": _continuation("reset-challenge", email),
            })

        if path == "resetpassword/v1.0/continue":
            if form.get("oob") != OTP:
                return httpx.Response(400, json={
                    "error": "invalid_grant",
                    "error_description": "AADSTS50181: Unable to validate the code.",
                    "suberror": "invalid_oob_value",
                })
            return httpx.Response(200, json={"continuation_token": _continuation("reset-oob", email)})

        if path == "resetpassword/v1.0/submit":
            if len(form.get("new_password", "")) < 8:
                return httpx.Response(400, json={"error": "invalid_grant", "suberror": "password_too_weak"})
            self.users[email] = form["new_password"]
            return httpx.Response(200, json={
                "continuation_token": _continuation("reset-submit", email),
                "poll_interval": 1,
            })

        return httpx.Response(404, json={"error": "not_found"})


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return build_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def datastore() -> FakeDatastore:
    return FakeDatastore()


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def signer() -> TokenSigner:
    return TokenSigner(TEST_PRIVATE_KEY, TEST_PUBLIC_KEY, issuer="central-auth", expiration_minutes=15)


@pytest.fixture
def make_client(idp, datastore, clock):
    """Factory for a TestClient over an app with optional settings overrides."""
    clients: List[TestClient] = []

    def factory(**overrides: Any) -> TestClient:
        app: FastAPI = create_app(
            build_settings(**overrides),
            datastore=datastore,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(idp.handler)),
            clock=clock,
        )
        test_client = TestClient(app, follow_redirects=False)
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield factory

    for test_client in clients:
        test_client.__exit__(None, None, None)


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def browser_login(idp) -> Callable[..., Dict[str, Any]]:
    """
    Run /auth/login and /auth/callback for a user.

    Returns the login redirect's query, the callback response and the
    exchange code it carried.
    """
    def run(test_client: TestClient, email: str = "alice@example.com", **claims: Any) -> Dict[str, Any]:
        login = test_client.get("/auth/login", params={"client_id": "app1", "redirect_uri": REDIRECT_URI})
        assert login.status_code == 302
        query = {k: v[0] for k, v in parse_qs(urlsplit(login.headers["location"]).query).items()}

        code = idp.authorization_code(query["nonce"], email=email, **claims)
        callback = test_client.get("/auth/callback", params={"code": code, "state": query["state"]})
        assert callback.status_code == 302, callback.text

        returned = {k: v[0] for k, v in parse_qs(urlsplit(callback.headers["location"]).query).items()}
        return {"authorize": query, "callback": callback, "exchange_code": returned["code"]}

    return run
