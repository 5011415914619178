"""
Token issuance shared by every login path.

Resolves datastore claims for a user (provisioning them on first sight),
assembles the claim set, signs it and mints the refresh token.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from central_auth.auth.claims import ClaimSet, IdentityProviderUser, assemble_claims
from central_auth.auth.signer import TokenSigner
from central_auth.auth.stores import TokenStores
from central_auth.auth.utils import redact_email
from central_auth.db import Datastore, DatastoreClaims, DatastoreError

logger = logging.getLogger(__name__)


@dataclass
class IssuedTokens:
    access_token: str
    expires_in: int
    refresh_token: str
    refresh_expires_in: int
    claims: ClaimSet

    def to_response(self, **extra: Any) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
        }
        body.update(extra)
        return body


class TokenIssuer:
    """Turns an authenticated identity-provider user into platform tokens."""

    def __init__(
        self,
        signer: TokenSigner,
        stores: TokenStores,
        datastore: Datastore,
        refresh_token_ttl_seconds: int,
    ):
        self.signer = signer
        self.stores = stores
        self.datastore = datastore
        self.refresh_token_ttl_seconds = refresh_token_ttl_seconds

    async def resolve_claims(
        self,
        user: IdentityProviderUser,
        role_hint: Optional[str] = None,
    ) -> Optional[DatastoreClaims]:
        """
        Look up the user's datastore claims, provisioning them if missing.

        Raises:
            DatastoreError: If the datastore fails
        """
        if not user.email:
            return None

        claims = await self.datastore.get_claims_by_email(user.email)
        if claims is not None:
            return claims

        await self.datastore.provision_person(
            user.object_id,
            user.email,
            user.name,
            role_hint or user.persona_code,
        )
        return await self.datastore.get_claims_by_email(user.email)

    async def resolve_claims_or_default(
        self,
        user: IdentityProviderUser,
        role_hint: Optional[str] = None,
    ) -> Optional[DatastoreClaims]:
        """resolve_claims, logging datastore failures and returning None instead."""
        try:
            return await self.resolve_claims(user, role_hint)
        except DatastoreError as e:
            logger.error(
                f"Datastore claims lookup failed for {redact_email(user.email)}, issuing default claims: {e}",
                exc_info=True,
            )
            return None

    def issue(self, claims: ClaimSet) -> IssuedTokens:
        """Sign a claim set and mint its refresh token."""
        access_token = self.signer.sign(claims)
        refresh_token = self.stores.create_refresh_token(claims)
        return IssuedTokens(
            access_token=access_token,
            expires_in=self.signer.expires_in,
            refresh_token=refresh_token,
            refresh_expires_in=self.refresh_token_ttl_seconds,
            claims=claims,
        )

    async def issue_for_user(
        self,
        user: IdentityProviderUser,
        role_hint: Optional[str] = None,
    ) -> IssuedTokens:
        datastore_claims = await self.resolve_claims_or_default(user, role_hint)
        return self.issue(assemble_claims(user, datastore_claims))
