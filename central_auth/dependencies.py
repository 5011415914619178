"""
Application state shared by the route modules.

`create_app` builds one `AppState` and stores it on `app.state.app_state`;
routes reach it through the `get_app_state` dependency.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from fastapi import Request, status

from central_auth.auth.errors import AuthError
from central_auth.auth.issuance import TokenIssuer
from central_auth.auth.journeys import JourneyTracker
from central_auth.auth.native import NativeAuthClient
from central_auth.auth.providers import OAuthClient, Provider
from central_auth.auth.rate_limit import RateLimiters, RateLimitTier
from central_auth.auth.signer import TokenSigner
from central_auth.auth.stores import TokenStores
from central_auth.config import Settings
from central_auth.db import Database, Datastore

RATE_LIMIT_MESSAGES = {
    RateLimitTier.AUTH: "Too many authentication attempts, please try again later.",
    RateLimitTier.API: "Too many requests, please try again later.",
}


@dataclass
class AppState:
    settings: Settings
    http_client: httpx.AsyncClient
    signer: TokenSigner
    stores: TokenStores
    datastore: Datastore
    issuer: TokenIssuer
    tracker: JourneyTracker
    oauth_clients: Dict[Provider, OAuthClient]
    native: NativeAuthClient
    limiters: RateLimiters
    database: Optional[Database] = None


def get_app_state(request: Request) -> AppState:
    """Dependency returning the state built by create_app."""
    return request.app.state.app_state


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit(tier: RateLimitTier):
    """
    Dependency factory limiting a route per client IP.

    Usage:
        @router.get("/login", dependencies=[Depends(rate_limit(RateLimitTier.AUTH))])

    Raises:
        AuthError: 429 with Retry-After once the client's allowance is spent
    """
    def dependency(request: Request) -> None:
        limiter = get_app_state(request).limiters[tier]
        info = limiter.check(client_ip(request))
        if not info.allowed:
            raise AuthError(
                status.HTTP_429_TOO_MANY_REQUESTS,
                "too_many_requests",
                RATE_LIMIT_MESSAGES[tier],
                headers=info.headers(),
            )

    return dependency
