"""
Authentication Package

This package handles authentication and token issuance for spoke
applications, using Microsoft Entra ID (workforce or External ID), Google
and Entra native authentication.

Modules:
- routes: Browser redirect flow (/auth/login, /auth/callback, /auth/logout, /auth/me)
- token_routes: Exchange-code redemption, refresh and password login
- signup / password_reset: Native-auth flows held together by continuation tokens
- signer: Platform token signing, verification and JWKS publication
- claims: Claim set assembly from identity provider and datastore data
- stores: Ephemeral one-time stores (sessions, codes, refresh and continuation tokens)
- providers / native: Identity provider clients
- utils: JWKS caching, ID token verification and log redaction

The redirect flow:
1. Spoke app sends the browser to /auth/login
2. User authenticates with the identity provider
3. /auth/callback signs a platform token and redirects with a one-time exchange code
4. Spoke app redeems the code at /auth/token/exchange
5. Spoke app renews the token at /auth/token/refresh
"""

from .password_reset import reset_router
from .routes import auth_router
from .signup import signup_router
from .token_routes import token_router

__all__ = [
    "auth_router",
    "token_router",
    "signup_router",
    "reset_router",
]
