"""
Configuration module for the Central Auth identity broker.

This module uses Pydantic Settings to load and validate environment variables
for Microsoft Entra ID (workforce or CIAM), Google sign-in, token signing,
the ephemeral token stores and the optional PostgreSQL datastore.

Environment variables are loaded from .env file or system environment.
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlsplit

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Identity provider credentials, signing keys, store lifetimes and
    datastore connection details are all defined here.
    """

    # =========================================================================
    # Microsoft Entra ID Configuration
    # =========================================================================

    TENANT_ID: str = Field(
        ...,
        description="Entra tenant ID (GUID format)",
        min_length=36,
        max_length=36,
    )

    CLIENT_ID: str = Field(
        ...,
        description="Entra application (client) ID",
        min_length=36,
        max_length=36,
    )

    CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Entra client secret (confidential client)",
    )

    TENANT_NAME: Optional[str] = Field(
        None,
        description="CIAM tenant subdomain (e.g. 'contoso' for contoso.ciamlogin.com); enables native auth",
    )

    ENTRA_ROLE_EXTENSION_ATTRIBUTE: str = Field(
        default="extension_5ea66064c5ae4d17801f2ea1b1c00fda_Role",
        description="Directory extension attribute carrying the persona code",
    )

    # =========================================================================
    # Google Configuration
    # =========================================================================

    GOOGLE_CLIENT_ID: Optional[str] = Field(None, description="Google OAuth client ID")
    GOOGLE_CLIENT_SECRET: Optional[str] = Field(None, description="Google OAuth client secret")

    # =========================================================================
    # Redirects
    # =========================================================================

    REDIRECT_URIS: str = Field(
        ...,
        description="Comma-separated spoke-app callback URLs allowed as redirect_uri",
        min_length=1,
    )

    BASE_URL: str = Field(
        default="http://localhost:3000",
        description="Public base URL of this service (IdP redirect is {BASE_URL}/auth/callback)",
    )

    HTTPS_ENABLED: bool = Field(
        default=False,
        description="Service is served over HTTPS: Secure cookies, HSTS, plain-HTTP requests flagged",
    )

    HTTPS_REDIRECT: bool = Field(
        default=False,
        description="With HTTPS_ENABLED, answer plain-HTTP requests with a 301 to https instead of a warning",
    )

    # =========================================================================
    # Rate Limiting
    # =========================================================================

    AUTH_RATE_LIMIT: int = Field(
        default=10,
        description="Requests per window and client IP on /auth/login and /auth/callback",
        ge=1,
    )

    API_RATE_LIMIT: int = Field(
        default=100,
        description="Requests per window and client IP on /.well-known/jwks.json and /auth/me",
        ge=1,
    )

    RATE_LIMIT_WINDOW_SECONDS: int = Field(
        default=900,
        description="Window over which the rate limits refill",
        ge=1,
    )

    # =========================================================================
    # Token Signing Configuration
    # =========================================================================

    JWT_PRIVATE_KEY: Optional[str] = Field(None, description="RS256 private key (PEM)")
    JWT_PUBLIC_KEY: Optional[str] = Field(None, description="RS256 public key (PEM)")
    JWT_PRIVATE_KEY_PATH: Optional[str] = Field(None, description="Path to the private key PEM file")
    JWT_PUBLIC_KEY_PATH: Optional[str] = Field(None, description="Path to the public key PEM file")

    JWT_ISSUER: str = Field(
        default="central-auth",
        description="Issuer (iss) written into every signed token",
    )

    JWT_AUDIENCE: Optional[str] = Field(
        None,
        description="Comma-separated audience used when a claim set carries none",
    )

    JWT_EXPIRATION_MINUTES: int = Field(
        default=15,
        description="Access token lifetime in minutes",
        ge=1,
        le=1440,
    )

    REFRESH_TOKEN_EXPIRATION_DAYS: int = Field(
        default=30,
        description="Refresh token lifetime in days",
        ge=1,
        le=365,
    )

    # =========================================================================
    # Ephemeral Store Configuration
    # =========================================================================

    SESSION_TTL_SECONDS: int = Field(default=600, description="Authorization session lifetime", ge=1)
    EXCHANGE_CODE_TTL_SECONDS: int = Field(default=300, description="Exchange code lifetime", ge=1)
    CONTINUATION_TTL_SECONDS: int = Field(default=600, description="Native-auth continuation token lifetime", ge=1)
    STORE_SWEEP_INTERVAL_SECONDS: int = Field(default=300, description="Interval between store sweeps", ge=1)

    # =========================================================================
    # Outbound Call Configuration
    # =========================================================================

    IDP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for every identity provider HTTP call",
        gt=0,
    )

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache Entra JWKS keys in seconds",
        ge=0,
        le=86400,
    )

    RESET_SIGN_IN_DELAY_SECONDS: float = Field(
        default=1.5,
        description="Wait before signing in with a freshly reset password",
        ge=0,
    )

    RESET_SIGN_IN_RETRY_DELAY_SECONDS: float = Field(
        default=2.0,
        description="Wait before the single retry when the new password has not propagated",
        ge=0,
    )

    # =========================================================================
    # Datastore Configuration
    # =========================================================================

    DATABASE_URL: Optional[str] = Field(
        None,
        description="PostgreSQL connection URL (leave empty to run without a datastore)",
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    SERVICE_HOST: str = Field(default="0.0.0.0", description="Host to bind the server")
    SERVICE_PORT: int = Field(default=3000, description="Port to bind the server", ge=1, le=65535)

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated CORS origins (defaults to the REDIRECT_URIS origins)",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def redirect_uris_list(self) -> List[str]:
        """Configured spoke-app redirect URIs."""
        return _split_csv(self.REDIRECT_URIS)

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Falls back to the scheme+host of every configured redirect URI.
        """
        if self.ALLOWED_ORIGINS:
            return _split_csv(self.ALLOWED_ORIGINS)

        origins: List[str] = []
        for uri in self.redirect_uris_list:
            parts = urlsplit(uri)
            origin = f"{parts.scheme}://{parts.netloc}"
            if parts.netloc and origin not in origins:
                origins.append(origin)
        return origins

    @property
    def audience_list(self) -> List[str]:
        return _split_csv(self.JWT_AUDIENCE or "")

    @property
    def base_url(self) -> str:
        return self.BASE_URL.rstrip("/")

    @property
    def callback_url(self) -> str:
        """Redirect URI registered with the identity providers."""
        return f"{self.base_url}/auth/callback"

    @property
    def entra_authority(self) -> str:
        """
        Construct the Entra authority URL.

        CIAM tenants live under ciamlogin.com; workforce tenants under
        login.microsoftonline.com.
        """
        if self.TENANT_NAME:
            return f"https://{self.TENANT_NAME}.ciamlogin.com/{self.TENANT_ID}"
        return f"https://login.microsoftonline.com/{self.TENANT_ID}"

    @property
    def native_auth_base_url(self) -> Optional[str]:
        """Base URL of the CIAM native authentication API, if configured."""
        if not self.TENANT_NAME:
            return None
        return f"https://{self.TENANT_NAME}.ciamlogin.com/{self.TENANT_NAME}.onmicrosoft.com"

    @property
    def google_enabled(self) -> bool:
        return bool(self.GOOGLE_CLIENT_ID and self.GOOGLE_CLIENT_SECRET)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.REFRESH_TOKEN_EXPIRATION_DAYS * 24 * 60 * 60

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("TENANT_ID", "CLIENT_ID")
    @classmethod
    def validate_guid_format(cls, v: str) -> str:
        """
        Validate that Entra IDs are in GUID format.

        Raises:
            ValueError: If not a valid GUID format
        """
        if not GUID_PATTERN.match(v):
            raise ValueError(
                f"Invalid GUID format: {v}. "
                "Expected format: xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx"
            )
        return v.lower()

    @field_validator("REDIRECT_URIS")
    @classmethod
    def validate_redirect_uris(cls, v: str) -> str:
        uris = _split_csv(v)
        if not uris:
            raise ValueError("REDIRECT_URIS must contain at least one URI")

        for uri in uris:
            parts = urlsplit(uri)
            if parts.scheme not in ("http", "https") or not parts.netloc:
                raise ValueError(f"Invalid redirect URI: '{uri}'. Expected an absolute http(s) URL")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return level

    @model_validator(mode="after")
    def load_signing_keys(self) -> "Settings":
        """
        Resolve the signing key pair.

        Keys given inline win over key files. Inline keys coming from a
        single-line env var carry literal '\\n' sequences, which are unescaped.
        """
        self.JWT_PRIVATE_KEY = _resolve_pem(self.JWT_PRIVATE_KEY, self.JWT_PRIVATE_KEY_PATH)
        self.JWT_PUBLIC_KEY = _resolve_pem(self.JWT_PUBLIC_KEY, self.JWT_PUBLIC_KEY_PATH)
        return self


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.

    Example:
        >>> from central_auth.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.entra_authority)
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _resolve_pem(inline: Optional[str], path: Optional[str]) -> Optional[str]:
    if inline:
        return inline.replace("\\n", "\n")
    if path:
        return Path(path).read_text(encoding="utf-8")
    return None


def _origin_and_path(uri: str) -> str:
    parts = urlsplit(uri)
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path}"


def is_redirect_uri_allowed(redirect_uri: str, settings: Settings) -> bool:
    """
    Check a spoke-app redirect URI against the allow-list.

    Only scheme, host and path are compared; any query string on either side
    is ignored.

    Example:
        >>> is_redirect_uri_allowed("https://app1.example.com/cb?x=1", settings)
        True
    """
    if not redirect_uri:
        return False

    candidate = _origin_and_path(redirect_uri)
    return any(candidate == _origin_and_path(allowed) for allowed in settings.redirect_uris_list)


def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    Called during application startup so misconfiguration shows up in the
    first log lines rather than on the first login.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors = []
    warnings = []

    if not settings.JWT_PRIVATE_KEY:
        errors.append("JWT_PRIVATE_KEY (or JWT_PRIVATE_KEY_PATH) is not set")
    if not settings.JWT_PUBLIC_KEY:
        errors.append("JWT_PUBLIC_KEY (or JWT_PUBLIC_KEY_PATH) is not set")

    if not settings.CLIENT_SECRET:
        warnings.append("CLIENT_SECRET is not set (required for confidential clients)")

    if not settings.TENANT_NAME:
        warnings.append("TENANT_NAME is not set; native auth endpoints will return 503")

    if bool(settings.GOOGLE_CLIENT_ID) != bool(settings.GOOGLE_CLIENT_SECRET):
        warnings.append("Only one of GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET is set; Google login disabled")

    if not settings.DATABASE_URL:
        warnings.append("DATABASE_URL is not set; default claims will be issued")

    if settings.HTTPS_ENABLED and not settings.base_url.startswith("https://"):
        warnings.append("HTTPS_ENABLED is set but BASE_URL is not https")

    if settings.HTTPS_REDIRECT and not settings.HTTPS_ENABLED:
        warnings.append("HTTPS_REDIRECT has no effect unless HTTPS_ENABLED is set")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "redirect_uris": settings.redirect_uris_list,
        "jwt_expiration_minutes": settings.JWT_EXPIRATION_MINUTES,
    }
