"""
Data Models Module

Pydantic models for request bodies and documented responses.

Request fields are Optional so that a missing field reaches the handler and
is reported in the service's own `{error, error_description}` shape instead
of a framework validation body.

Models are organized by functional area:
- Token models (exchange, refresh, password login, token responses)
- Sign-up and password reset models
- Prospect tracking models
- Service models (health)
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
from datetime import datetime


# ============================================================================
# Token Models
# ============================================================================

class ExchangeRequest(BaseModel):
    """Request model for redeeming an exchange code."""
    exchange_code: Optional[str] = Field(None, description="One-time code from the callback redirect")
    client_id: Optional[str] = Field(None, description="Client id the login was started with")


class RefreshRequest(BaseModel):
    """Request model for token refresh."""
    refresh_token: Optional[str] = Field(None, description="Refresh token from an earlier token response")


class PasswordLoginRequest(BaseModel):
    username: Optional[str] = Field(None, description="Email address")
    password: Optional[str] = Field(None, description="Password")


class TokenResponse(BaseModel):
    """Response model containing a platform JWT and metadata."""
    access_token: str = Field(..., description="Signed platform JWT")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_in: int = Field(..., description="Token expiration time in seconds")
    refresh_token: Optional[str] = Field(None, description="Opaque refresh token")


# ============================================================================
# Sign-up Models
# ============================================================================

class EmailRequest(BaseModel):
    """Body of the sign-up and password-reset start calls."""
    email: Optional[str] = Field(None, description="Email address")


class VerifyOtpRequest(BaseModel):
    email: Optional[str] = Field(None, description="Email address")
    code: Optional[str] = Field(None, description="One-time code sent by email")


class SignupPasswordRequest(BaseModel):
    """Body of the split sign-up flow's final call."""
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = Field(None, description="Email address")
    password: Optional[str] = Field(None, description="New account password")
    display_name: Optional[str] = Field(None, alias="displayName", description="Display name")
    role: Optional[str] = Field(None, description="Persona code, e.g. P1002")


class SignupCompleteRequest(SignupPasswordRequest):
    """Body of the one-shot sign-up call."""
    code: Optional[str] = Field(None, description="One-time code sent by email")


class ResetPasswordRequest(BaseModel):
    email: Optional[str] = Field(None, description="Email address")
    new_password: Optional[str] = Field(None, description="New password")


# ============================================================================
# Prospect Models
# ============================================================================

class ProspectRequest(BaseModel):
    email: Optional[str] = Field(None, description="Prospect email address")
    entry_route: Optional[str] = Field(None, description="How the prospect arrived (invite, self-serve, ...)")
    created_by: Optional[str] = Field(None, description="Creator identifier")


class RegistrationJourneyRequest(BaseModel):
    prospect_id: Optional[int] = Field(None, description="Prospect id")
    step_name: Optional[str] = Field(None, description="Workflow step name")
    status: Optional[str] = Field(None, description="Journey status")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Free-form journey metadata")


# ============================================================================
# Service Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(..., description="Health check timestamp")

