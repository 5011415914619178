"""
Ephemeral token stores.

Every short-lived artifact the service hands out or holds on a user's behalf
lives in one of these stores: authorization sessions (keyed by CSRF state),
exchange codes, refresh tokens, and the native-auth continuation tokens
(keyed by email, one store per stage).

All stores share one contract: put, consume (atomic get-and-delete) and
sweep. Entries are kept in process memory behind a lock, so a deployment with
more than one instance needs a shared backend with the same atomic consume.
"""

import asyncio
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Generic, Iterator, Optional, Tuple, TypeVar

from central_auth.auth.claims import ClaimSet
from central_auth.auth.providers import Provider
from central_auth.auth.rate_limit import RateLimiters

logger = logging.getLogger(__name__)

V = TypeVar("V")

Clock = Callable[[], float]

EXCHANGE_CODE_PREFIX = "ec_"
REFRESH_TOKEN_PREFIX = "rt_"


# =============================================================================
# Generic Store
# =============================================================================

@dataclass
class _Entry(Generic[V]):
    value: V
    created_at: float
    ttl: float


class EphemeralStore(Generic[V]):
    """
    Keyed store with per-entry TTL and one-time consume.

    An entry is treated as absent once `now - created_at > ttl`, whether or
    not the sweep has removed it yet.
    """

    def __init__(self, name: str, ttl_seconds: float, clock: Clock = time.monotonic):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry[V]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expired(self, entry: _Entry[V], now: float) -> bool:
        return now - entry.created_at > entry.ttl

    def put(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        """Store a value, replacing any existing entry for the key."""
        entry = _Entry(value=value, created_at=self._clock(), ttl=ttl if ttl is not None else self.ttl_seconds)
        with self._lock:
            self._entries[key] = entry

    def consume(self, key: str) -> Optional[V]:
        """
        Remove and return the value for a key.

        At most one caller ever receives a value for a given put.
        Returns None when the key is unknown or expired.
        """
        if not key:
            return None
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or self._expired(entry, self._clock()):
            return None
        return entry.value

    def get(self, key: str) -> Optional[V]:
        """Return the value for a key without consuming it."""
        if not key:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                return None
            return entry.value

    def contains(self, key: str) -> bool:
        return self.get(key) is not None

    def sweep(self) -> int:
        """Delete every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in expired:
                del self._entries[key]
        return len(expired)


# =============================================================================
# Stored Values
# =============================================================================

@dataclass
class AuthorizationSession:
    """One in-flight browser login, keyed by its CSRF state."""
    state: str
    code_verifier: str
    nonce: str
    redirect_uri: str
    provider: Provider
    client_id: str
    created_at: float = field(default_factory=time.time)


@dataclass
class ExchangeCodeGrant:
    access_token: str
    expires_in: int
    client_id: str
    refresh_token: Optional[str] = None


@dataclass
class RefreshGrant:
    claims: ClaimSet
    issued_at: float = field(default_factory=time.time)


class FlowKind(str, Enum):
    """Native-auth flows that hold state between calls."""
    SIGNUP = "signup"
    PASSWORD_RESET = "password_reset"


class FlowStage(str, Enum):
    """
    Linear progress of a sign-up or password-reset flow.

    Only STARTED and OTP_VERIFIED are held between calls; the later stages
    are passed through within a single request.
    """
    STARTED = "started"
    OTP_VERIFIED = "otp_verified"
    PASSWORD_SUBMITTED = "password_submitted"
    COMPLETED = "completed"


@dataclass
class FlowState:
    """Current stage of a native-auth flow and the token to continue it."""
    flow: FlowKind
    stage: FlowStage
    continuation_token: str


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


# =============================================================================
# Store Bundle
# =============================================================================

class TokenStores:
    """
    All stores used by the service, with their configured lifetimes.

    Continuation stores are keyed by normalized email; the exchange-code and
    refresh-token helpers mint the opaque keys themselves.
    """

    def __init__(
        self,
        session_ttl: float = 600,
        exchange_code_ttl: float = 300,
        refresh_token_ttl: float = 30 * 24 * 60 * 60,
        continuation_ttl: float = 600,
        clock: Clock = time.monotonic,
    ):
        self.sessions: EphemeralStore[AuthorizationSession] = EphemeralStore("sessions", session_ttl, clock)
        self.exchange_codes: EphemeralStore[ExchangeCodeGrant] = EphemeralStore("exchange_codes", exchange_code_ttl, clock)
        self.refresh_tokens: EphemeralStore[RefreshGrant] = EphemeralStore("refresh_tokens", refresh_token_ttl, clock)
        self.continuations: Dict[Tuple[FlowKind, FlowStage], EphemeralStore[FlowState]] = {
            (flow, stage): EphemeralStore(f"{flow.value}_{stage.value}", continuation_ttl, clock)
            for flow in FlowKind
            for stage in (FlowStage.STARTED, FlowStage.OTP_VERIFIED)
        }

    def __iter__(self) -> Iterator[EphemeralStore]:
        yield self.sessions
        yield self.exchange_codes
        yield self.refresh_tokens
        yield from self.continuations.values()

    # -------------------------------------------------------------------------
    # Exchange codes
    # -------------------------------------------------------------------------

    def create_exchange_code(
        self,
        access_token: str,
        expires_in: int,
        client_id: str,
        refresh_token: Optional[str] = None,
    ) -> str:
        code = EXCHANGE_CODE_PREFIX + secrets.token_urlsafe(32)
        self.exchange_codes.put(code, ExchangeCodeGrant(
            access_token=access_token,
            expires_in=expires_in,
            client_id=client_id,
            refresh_token=refresh_token,
        ))
        return code

    def consume_exchange_code(self, code: str, client_id: str) -> Optional[ExchangeCodeGrant]:
        """
        Redeem an exchange code for the client it was issued to.

        The code is spent even when the client does not match.
        """
        grant = self.exchange_codes.consume(code)
        if grant is None:
            return None
        if not secrets.compare_digest(grant.client_id, client_id or ""):
            logger.warning("Exchange code presented by a different client", extra={"client_id": client_id})
            return None
        return grant

    # -------------------------------------------------------------------------
    # Refresh tokens
    # -------------------------------------------------------------------------

    def create_refresh_token(self, claims: ClaimSet) -> str:
        token = REFRESH_TOKEN_PREFIX + secrets.token_urlsafe(32)
        self.refresh_tokens.put(token, RefreshGrant(claims=claims))
        return token

    def redeem_refresh_token(self, token: str, rotate: bool = True) -> Optional[Tuple[ClaimSet, str]]:
        """
        Look up a refresh token.

        With rotate=True the token is consumed and a new one is minted for
        the same claims; otherwise the same token stays valid.

        Returns:
            (claims, refresh_token to hand back) or None
        """
        if rotate:
            grant = self.refresh_tokens.consume(token)
            if grant is None:
                return None
            return grant.claims, self.create_refresh_token(grant.claims)

        grant = self.refresh_tokens.get(token)
        if grant is None:
            return None
        return grant.claims, token

    # -------------------------------------------------------------------------
    # Continuation tokens
    # -------------------------------------------------------------------------

    def save_flow(self, flow: FlowKind, stage: FlowStage, email: str, continuation_token: str) -> None:
        """Record that `email` has reached `stage`, replacing any earlier attempt."""
        self.continuations[(flow, stage)].put(
            normalize_email(email),
            FlowState(flow=flow, stage=stage, continuation_token=continuation_token),
        )

    def take_flow(self, flow: FlowKind, stage: FlowStage, email: str) -> Optional[FlowState]:
        """Consume the continuation token held for `email` at `stage`."""
        return self.continuations[(flow, stage)].consume(normalize_email(email))

    def has_flow(self, flow: FlowKind, stage: FlowStage, email: str) -> bool:
        return self.continuations[(flow, stage)].contains(normalize_email(email))

    # -------------------------------------------------------------------------
    # Sweeping
    # -------------------------------------------------------------------------

    def sweep(self) -> Dict[str, int]:
        removed = {store.name: store.sweep() for store in self}
        total = sum(removed.values())
        if total:
            logger.info(f"Swept {total} expired store entries", extra={"removed": removed})
        return removed


async def run_sweeper(
    stores: TokenStores,
    interval_seconds: float,
    limiters: Optional[RateLimiters] = None,
) -> None:
    """Sweep all stores (and idle rate-limit buckets) every `interval_seconds` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            stores.sweep()
            if limiters is not None:
                limiters.sweep()
        except Exception as e:
            logger.error(f"Store sweep failed: {e}", exc_info=True)
