"""
Claim set assembly.

Merges the identity returned by an identity provider with the authorization
data held in the datastore into the payload that gets signed. The assembler
is a pure function: datastore reads happen in the caller.
"""

import copy
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from central_auth.db.models import DatastoreClaims


# Placeholder authorization for users the datastore does not know yet, so a
# missing provisioning step never blocks a login.
DEFAULT_APPS: Dict[str, Dict[str, Any]] = {
    "pulse": {"uid": "PULSE_99", "roles": ["PRODUCER"]},
    "key": {"uid": "KEY_UUID_1", "roles": ["ARTIST"]},
}

DEFAULT_STATUS = "Active"


# ============================================================================
# Identity Provider User
# ============================================================================

class IdentityProviderUser(BaseModel):
    """User profile as reported by an identity provider."""
    object_id: str = Field(..., description="Provider subject identifier (Entra oid, Google sub)")
    email: str = Field(default="", description="Email address")
    name: str = Field(default="", description="Display name")
    roles: List[str] = Field(default_factory=list, description="Provider-side roles")
    persona_code: Optional[str] = Field(None, description="Persona code from a directory attribute")


# ============================================================================
# Claim Set
# ============================================================================

class AppClaims(BaseModel):
    """Per-application identity and roles."""
    uid: str = Field(..., description="Application-scoped user id")
    roles: List[str] = Field(default_factory=list, description="Roles within the application")


class IdentityClaims(BaseModel):
    """Identity block of a signed token."""
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., description="Email address")
    status: str = Field(default=DEFAULT_STATUS, description="Platform account status")
    entra_uuid: str = Field(..., description="Identity provider subject id")
    person_uuid: str = Field(..., alias="Person_uuid", description="Platform person id")


class ClaimSet(BaseModel):
    """Canonical payload of a signed token (before iss/iat/exp are added)."""
    sub: str = Field(..., description="Stable platform person id")
    identity: IdentityClaims
    apps: Dict[str, AppClaims] = Field(default_factory=dict)
    aud: List[str] = Field(default_factory=list, description="Applications this token is valid for")

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        if not payload["aud"]:
            del payload["aud"]
        return payload


# ============================================================================
# Assembly
# ============================================================================

def group_assignments(claims: DatastoreClaims) -> Dict[str, AppClaims]:
    """
    Group persona assignments by application.

    Each application's uid comes from its first row; roles collect the
    persona names of every row for that application, in row order.
    """
    apps: Dict[str, AppClaims] = {}
    for row in claims.assignments:
        app = apps.get(row.app_slug)
        if app is None:
            apps[row.app_slug] = AppClaims(uid=row.persona_code, roles=[row.persona_name])
        else:
            app.roles.append(row.persona_name)
    return apps


def assemble_claims(
    user: IdentityProviderUser,
    datastore_claims: Optional[DatastoreClaims] = None,
) -> ClaimSet:
    """
    Build the claim set for a user.

    Args:
        user: Identity returned by the identity provider.
        datastore_claims: Authorization data from the datastore, or None for
            a user that has not been provisioned.

    Returns:
        ClaimSet with a non-empty apps map. Users without datastore rows get
        DEFAULT_APPS and an audience of its keys.
    """
    apps: Dict[str, AppClaims] = {}
    if datastore_claims is not None:
        apps = group_assignments(datastore_claims)

    if not apps:
        apps = {
            name: AppClaims(**copy.deepcopy(value))
            for name, value in DEFAULT_APPS.items()
        }

    if datastore_claims is not None:
        person_id = datastore_claims.person_id
        account_status = datastore_claims.status or DEFAULT_STATUS
        email = user.email or datastore_claims.email or ""
    else:
        person_id = user.object_id
        account_status = DEFAULT_STATUS
        email = user.email

    return ClaimSet(
        sub=person_id,
        identity=IdentityClaims(
            email=email,
            status=account_status,
            entra_uuid=user.object_id,
            person_uuid=person_id,
        ),
        apps=apps,
        aud=list(apps.keys()),
    )
