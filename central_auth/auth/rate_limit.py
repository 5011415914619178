"""
Per-client rate limiting.

In-memory token buckets keyed by client IP. Each limit allows `limit`
requests in a burst and refills at `limit / window` tokens per second, so a
client that has used its allowance gets one more request every
`window / limit` seconds.

Two tiers are configured:
  - auth: /auth/login and /auth/callback
  - api:  /.well-known/jwks.json and /auth/me
"""

import logging
import math
import threading
import time
from enum import Enum
from typing import Callable, Dict

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class RateLimitTier(str, Enum):
    AUTH = "auth"
    API = "api"


class _Bucket:
    """A single token bucket for one client."""

    __slots__ = ("tokens", "last_refill")

    def __init__(self, capacity: float, now: float):
        self.tokens = capacity
        self.last_refill = now


class RateLimitInfo:
    """Outcome of one `check()`."""

    __slots__ = ("allowed", "limit", "remaining", "reset_after")

    def __init__(self, allowed: bool, limit: int, remaining: int, reset_after: float):
        self.allowed = allowed
        self.limit = limit
        self.remaining = remaining
        self.reset_after = reset_after

    def headers(self) -> Dict[str, str]:
        """RateLimit-* response headers, plus Retry-After when denied."""
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(math.ceil(self.reset_after))
        return headers


class RateLimiter:
    """
    Token-bucket limiter keyed by client identifier.

    Args:
        name: Label used in log lines
        limit: Bucket capacity (burst size)
        window_seconds: Time for an empty bucket to refill completely
        clock: Monotonic time source
    """

    def __init__(self, name: str, limit: int, window_seconds: float, clock: Clock = time.monotonic):
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self.seconds_per_token = window_seconds / limit
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def check(self, key: str) -> RateLimitInfo:
        """Consume one token for `key` if one is available."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket(self.limit, now)

            refilled = (now - bucket.last_refill) / self.seconds_per_token
            bucket.tokens = min(self.limit, bucket.tokens + refilled)
            bucket.last_refill = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                reset_after = (self.limit - bucket.tokens) * self.seconds_per_token
                return RateLimitInfo(True, self.limit, int(bucket.tokens), reset_after)

            reset_after = (1.0 - bucket.tokens) * self.seconds_per_token

        logger.warning(f"Rate limit exceeded on {self.name} tier", extra={"client": key})
        return RateLimitInfo(False, self.limit, 0, reset_after)

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def sweep(self) -> int:
        """Drop buckets that have refilled completely. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            full = [
                key for key, bucket in self._buckets.items()
                if now - bucket.last_refill >= self.window_seconds
            ]
            for key in full:
                del self._buckets[key]
        return len(full)


class RateLimiters:
    """The limiter for each tier, built from settings."""

    def __init__(self, auth_limit: int, api_limit: int, window_seconds: float, clock: Clock = time.monotonic):
        self.tiers: Dict[RateLimitTier, RateLimiter] = {
            RateLimitTier.AUTH: RateLimiter("auth", auth_limit, window_seconds, clock),
            RateLimitTier.API: RateLimiter("api", api_limit, window_seconds, clock),
        }

    def __getitem__(self, tier: RateLimitTier) -> RateLimiter:
        return self.tiers[tier]

    def sweep(self) -> int:
        return sum(limiter.sweep() for limiter in self.tiers.values())


__all__ = [
    "RateLimitTier",
    "RateLimitInfo",
    "RateLimiter",
    "RateLimiters",
]
