"""
Rate Limit and Security Header Tests

Tests the per-IP token buckets, the 429 responses on the login, callback,
JWKS and /auth/me routes, and the headers added to every response.
"""

import pytest

from central_auth.auth.rate_limit import RateLimiter, RateLimiters, RateLimitTier
from conftest import REDIRECT_URI

LOGIN_PARAMS = {"client_id": "app1", "redirect_uri": REDIRECT_URI}


class TestRateLimiter:
    """Test suite for the token-bucket limiter"""

    def test_burst_up_to_limit_then_denied(self, clock):
        limiter = RateLimiter("auth", 10, 900, clock)

        results = [limiter.allow("10.0.0.1") for _ in range(11)]

        assert results == [True] * 10 + [False]

    def test_clients_are_limited_separately(self, clock):
        limiter = RateLimiter("auth", 1, 900, clock)

        assert limiter.allow("10.0.0.1")
        assert not limiter.allow("10.0.0.1")
        assert limiter.allow("10.0.0.2")

    def test_one_request_regained_every_window_over_limit(self, clock):
        limiter = RateLimiter("auth", 10, 900, clock)
        for _ in range(10):
            limiter.check("10.0.0.1")

        clock.advance(60)
        assert not limiter.allow("10.0.0.1")

        clock.advance(60)
        assert limiter.allow("10.0.0.1")
        assert not limiter.allow("10.0.0.1")

    def test_denied_info_carries_retry_after(self, clock):
        limiter = RateLimiter("auth", 10, 900, clock)
        for _ in range(10):
            limiter.check("10.0.0.1")

        info = limiter.check("10.0.0.1")

        assert not info.allowed
        assert info.remaining == 0
        assert info.headers()["Retry-After"] == "90"
        assert info.headers()["RateLimit-Limit"] == "10"

    def test_allowed_info_has_no_retry_after(self, clock):
        info = RateLimiter("api", 100, 900, clock).check("10.0.0.1")

        assert info.allowed
        assert info.remaining == 99
        assert "Retry-After" not in info.headers()

    def test_sweep_drops_only_refilled_buckets(self, clock):
        limiters = RateLimiters(auth_limit=10, api_limit=100, window_seconds=900, clock=clock)
        limiters[RateLimitTier.AUTH].check("10.0.0.1")
        clock.advance(600)
        limiters[RateLimitTier.API].check("10.0.0.2")
        clock.advance(300)

        assert limiters.sweep() == 1
        assert len(limiters[RateLimitTier.AUTH]) == 0
        assert len(limiters[RateLimitTier.API]) == 1


class TestRateLimitedRoutes:
    """Test suite for 429 responses on limited routes"""

    def test_login_limited_after_ten_attempts(self, client):
        for _ in range(10):
            assert client.get("/auth/login", params=LOGIN_PARAMS).status_code == 302

        response = client.get("/auth/login", params=LOGIN_PARAMS)

        assert response.status_code == 429
        assert response.json() == {
            "error": "too_many_requests",
            "error_description": "Too many authentication attempts, please try again later.",
        }
        assert int(response.headers["retry-after"]) > 0

    def test_callback_shares_the_auth_allowance(self, make_client):
        client = make_client(AUTH_RATE_LIMIT=2)
        client.get("/auth/login", params=LOGIN_PARAMS)
        client.get("/auth/callback", params={"state": "abc"})

        response = client.get("/auth/callback", params={"code": "c", "state": "abc"})

        assert response.status_code == 429

    def test_jwks_limited(self, make_client):
        client = make_client(API_RATE_LIMIT=3)
        for _ in range(3):
            assert client.get("/.well-known/jwks.json").status_code == 200

        response = client.get("/.well-known/jwks.json")

        assert response.status_code == 429
        assert response.json()["error"] == "too_many_requests"

    def test_me_limited_before_token_check(self, make_client):
        client = make_client(API_RATE_LIMIT=2)
        assert client.get("/auth/me").status_code == 401
        assert client.get("/auth/me").status_code == 401

        assert client.get("/auth/me").status_code == 429

    def test_allowance_returns_after_refill(self, make_client, clock):
        client = make_client(AUTH_RATE_LIMIT=1, RATE_LIMIT_WINDOW_SECONDS=60)
        client.get("/auth/login", params=LOGIN_PARAMS)
        assert client.get("/auth/login", params=LOGIN_PARAMS).status_code == 429

        clock.advance(60)

        assert client.get("/auth/login", params=LOGIN_PARAMS).status_code == 302

    @pytest.mark.parametrize("path", ["/health", "/"])
    def test_unlimited_routes(self, make_client, path):
        client = make_client(AUTH_RATE_LIMIT=1, API_RATE_LIMIT=1)

        statuses = {client.get(path).status_code for _ in range(5)}

        assert statuses == {200}

    def test_separate_apps_do_not_share_buckets(self, make_client):
        first = make_client(API_RATE_LIMIT=1)
        second = make_client(API_RATE_LIMIT=1)

        assert first.get("/.well-known/jwks.json").status_code == 200
        assert second.get("/.well-known/jwks.json").status_code == 200


class TestSecurityHeaders:
    """Test suite for security headers and HTTPS enforcement"""

    def test_headers_on_every_response(self, client):
        response = client.get("/health")

        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "SAMEORIGIN"
        assert response.headers["referrer-policy"] == "no-referrer"
        assert response.headers["content-security-policy"].startswith("default-src 'self'")
        assert "strict-transport-security" not in response.headers

    def test_headers_on_error_responses(self, client):
        response = client.get("/auth/login")

        assert response.status_code == 400
        assert response.headers["x-content-type-options"] == "nosniff"

    def test_docs_served_without_csp(self, client):
        response = client.get("/docs")

        assert response.status_code == 200
        assert "content-security-policy" not in response.headers

    def test_hsts_when_https_enabled(self, make_client):
        client = make_client(HTTPS_ENABLED=True, BASE_URL="https://auth.example.com")

        response = client.get("/health", headers={"X-Forwarded-Proto": "https"})

        assert response.status_code == 200
        assert response.headers["strict-transport-security"] == "max-age=31536000; includeSubDomains; preload"

    def test_plain_http_served_without_redirect(self, make_client):
        client = make_client(HTTPS_ENABLED=True, BASE_URL="https://auth.example.com")

        assert client.get("/health").status_code == 200

    def test_plain_http_redirected_when_configured(self, make_client):
        client = make_client(HTTPS_ENABLED=True, HTTPS_REDIRECT=True, BASE_URL="https://auth.example.com")

        response = client.get("/health?check=1")

        assert response.status_code == 301
        assert response.headers["location"] == "https://testserver/health?check=1"

    def test_forwarded_https_not_redirected(self, make_client):
        client = make_client(HTTPS_ENABLED=True, HTTPS_REDIRECT=True, BASE_URL="https://auth.example.com")

        response = client.get("/health", headers={"X-Forwarded-Proto": "https"})

        assert response.status_code == 200
