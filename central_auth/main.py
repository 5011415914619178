"""
FastAPI Application Factory
===========================

Entry point of the central authentication service, which sits between spoke
applications and the external identity providers.

Architecture:
    Spoke App → Central Auth (this service) → Entra ID / Google
                                            → PostgreSQL (claims, prospects)

Routers:
    - /auth/login, /auth/callback, /auth/logout : Browser redirect flow
    - /auth/token/*                              : Exchange, refresh, password login
    - /auth/signup/*, /auth/password-reset/*     : Native-auth flows
    - /prospects, /registration-journeys         : Prospect tracking
    - /.well-known/jwks.json                     : Public signing keys
    - /health                                    : Health check

Running the Service:
    Development:
        uvicorn central_auth.main:create_app --factory --reload --port 3000

    Production:
        uvicorn central_auth.main:create_app --factory --host 0.0.0.0 --port 3000

    Run a single worker: the token stores live in process memory.
"""

import asyncio
import contextlib
import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from central_auth import __version__
from central_auth.auth import auth_router, reset_router, signup_router, token_router
from central_auth.auth.errors import AuthError
from central_auth.auth.issuance import TokenIssuer
from central_auth.auth.journeys import JourneyTracker
from central_auth.auth.native import NativeAuthClient
from central_auth.auth.providers import build_oauth_clients
from central_auth.auth.rate_limit import RateLimiters, RateLimitTier
from central_auth.auth.signer import TokenSigner
from central_auth.auth.stores import TokenStores, run_sweeper
from central_auth.config import Settings, get_settings, validate_configuration
from central_auth.db import Database, Datastore, PostgresDatastore
from central_auth.dependencies import AppState, rate_limit
from central_auth.models import HealthResponse
from central_auth.prospects import prospects_router

logger = logging.getLogger("central_auth.main")

JWKS_CACHE_CONTROL = "public, max-age=3600"

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "style-src 'self' 'unsafe-inline'; "
    "script-src 'self'; "
    "img-src 'self' data: https:"
)
STRICT_TRANSPORT_SECURITY = "max-age=31536000; includeSubDomains; preload"

# Swagger UI and ReDoc load their assets from a CDN
DOCS_PATHS = ("/docs", "/redoc")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def _is_https(request: Request) -> bool:
    return request.url.scheme == "https" or request.headers.get("x-forwarded-proto") == "https"


def add_security_middleware(app: FastAPI, settings: Settings) -> None:
    """
    HTTPS enforcement and security headers on every response.

    With HTTPS_ENABLED, a plain-HTTP request is redirected (301) when
    HTTPS_REDIRECT is set and otherwise served with a warning in the log.
    HSTS is only sent when HTTPS_ENABLED is set.
    """
    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        if settings.HTTPS_ENABLED and not _is_https(request):
            if settings.HTTPS_REDIRECT:
                return RedirectResponse(
                    str(request.url.replace(scheme="https")),
                    status_code=status.HTTP_301_MOVED_PERMANENTLY,
                )
            logger.warning("Request not using HTTPS", extra={"path": request.url.path})

        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
        if not request.url.path.startswith(DOCS_PATHS):
            response.headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
        if settings.HTTPS_ENABLED:
            response.headers["Strict-Transport-Security"] = STRICT_TRANSPORT_SECURITY
        return response


def build_state(
    settings: Settings,
    *,
    datastore: Optional[Datastore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = time.monotonic,
) -> AppState:
    """
    Build every shared resource from settings.

    Raises:
        TokenSigningError: If the signing keys are missing or unreadable
    """
    signer = TokenSigner(
        settings.JWT_PRIVATE_KEY,
        settings.JWT_PUBLIC_KEY,
        issuer=settings.JWT_ISSUER,
        audience=settings.audience_list,
        expiration_minutes=settings.JWT_EXPIRATION_MINUTES,
    )

    stores = TokenStores(
        session_ttl=settings.SESSION_TTL_SECONDS,
        exchange_code_ttl=settings.EXCHANGE_CODE_TTL_SECONDS,
        refresh_token_ttl=settings.refresh_token_ttl_seconds,
        continuation_ttl=settings.CONTINUATION_TTL_SECONDS,
        clock=clock,
    )

    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.IDP_TIMEOUT_SECONDS)

    database: Optional[Database] = None
    if datastore is None:
        database = Database(settings.DATABASE_URL)
        datastore = PostgresDatastore(database)

    return AppState(
        settings=settings,
        http_client=http_client,
        signer=signer,
        stores=stores,
        datastore=datastore,
        issuer=TokenIssuer(signer, stores, datastore, settings.refresh_token_ttl_seconds),
        tracker=JourneyTracker(datastore),
        oauth_clients=build_oauth_clients(settings, http_client),
        native=NativeAuthClient(settings.native_auth_base_url, settings.CLIENT_ID, http_client),
        limiters=RateLimiters(
            settings.AUTH_RATE_LIMIT,
            settings.API_RATE_LIMIT,
            settings.RATE_LIMIT_WINDOW_SECONDS,
            clock=clock,
        ),
        database=database,
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Start the periodic store sweep

    Shutdown tasks:
        - Stop the sweep
        - Close the outbound HTTP client and the database pool
    """
    state: AppState = app.state.app_state
    sweeper = asyncio.create_task(
        run_sweeper(state.stores, state.settings.STORE_SWEEP_INTERVAL_SECONDS, state.limiters)
    )
    logger.info(
        "Central auth service started",
        extra={
            "version": __version__,
            "native_auth": state.native.configured,
            "datastore": state.datastore.configured,
            "providers": [p.value for p in state.oauth_clients],
        },
    )

    yield

    logger.info("Shutting down central auth service")
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper

    await state.http_client.aclose()
    if state.database is not None:
        await state.database.dispose()
    logger.info("Central auth service shutdown complete")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    *,
    datastore: Optional[Datastore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Shared state (signer, stores, identity provider clients, datastore)
        - CORS and security-header middleware
        - Per-IP rate limits on the login, callback, JWKS and /auth/me routes
        - Route handlers
        - Exception handlers

    The keyword arguments replace the datastore, outbound HTTP client and
    the clock behind the stores and rate limits, which tests use to run
    without external services.

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    report = validate_configuration(settings)
    for warning in report["warnings"]:
        logger.warning(f"Configuration: {warning}")
    for error in report["errors"]:
        logger.error(f"Configuration: {error}")

    app = FastAPI(
        title="Central Auth Service",
        description="Identity brokering and token issuance for spoke applications",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.app_state = build_state(settings, datastore=datastore, http_client=http_client, clock=clock)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    add_security_middleware(app, settings)

    app.include_router(auth_router)
    app.include_router(token_router)
    app.include_router(signup_router)
    app.include_router(reset_router)
    app.include_router(prospects_router)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check() -> Dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc),
        }

    @app.get(
        "/.well-known/jwks.json",
        tags=["System"],
        dependencies=[Depends(rate_limit(RateLimitTier.API))],
    )
    async def jwks(request: Request) -> JSONResponse:
        """Public keys for verifying platform tokens."""
        signer: TokenSigner = request.app.state.app_state.signer
        return JSONResponse(
            content=signer.publish_keys(),
            headers={"Cache-Control": JWKS_CACHE_CONTROL},
        )

    # Root endpoint
    @app.get("/", tags=["System"])
    async def root() -> Dict[str, Any]:
        """
        Root endpoint with service information.

        Returns:
            dict: Service metadata and available endpoints
        """
        return {
            "service": "central-auth",
            "version": __version__,
            "description": "Identity brokering and token issuance for spoke applications",
            "endpoints": {
                "health": "/health",
                "jwks": "/.well-known/jwks.json",
                "login": "/auth/login",
                "token": "/auth/token",
                "signup": "/auth/signup",
                "password_reset": "/auth/password-reset",
            }
        }

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors()]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "invalid_request",
                "error_description": f"Invalid request body: {', '.join(filter(None, fields)) or 'malformed JSON'}",
            },
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a generic error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "server_error",
                "error_description": "An unexpected error occurred",
            }
        )

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "central_auth.main:create_app",
        factory=True,
        host=settings.SERVICE_HOST,
        port=settings.SERVICE_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
