"""Token-bucket rate limiting for the HTTP API.

Clients are identified by user id when the auth gateway supplies one, and by
IP address otherwise. Buckets live in process memory.
"""

from __future__ import annotations

import hashlib
import time
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field

from .config import RateLimitSettings
from .logger import get_logger

log = get_logger(__name__)


class RateLimitTier(str, Enum):
    """Rate limit tiers for different caller types."""

    ANONYMOUS = "anonymous"  # IP only
    USER = "user"  # identified by X-User-Id
    ADMIN = "admin"  # admin API key, no limits


class RateLimitResult(BaseModel):
    allowed: bool
    retry_after: int = 0
    tier: RateLimitTier
    limit: int
    remaining: int
    reset_at: int = Field(description="Unix timestamp when the window resets")


class InMemoryRateLimiter:
    """Token bucket per key, refilled continuously at ``max_requests / window``."""

    def __init__(self, cleanup_interval: int = 3600, clock: Callable[[], float] = time.time):
        self.buckets: dict[str, dict[str, Any]] = {}
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self.last_cleanup = clock()

    def _cleanup_old_buckets(self) -> None:
        now = self.clock()
        if now - self.last_cleanup > self.cleanup_interval:
            expired_keys = [
                key for key, bucket in self.buckets.items() if now - bucket["last_check"] > self.cleanup_interval
            ]
            for key in expired_keys:
                del self.buckets[key]
            self.last_cleanup = now
            if expired_keys:
                log.debug("Cleaned up %d expired rate limit buckets", len(expired_keys))

    def check_rate_limit(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int, int]:
        """Return ``(allowed, retry_after_seconds, remaining_tokens)``."""
        self._cleanup_old_buckets()
        now = self.clock()

        if key not in self.buckets:
            self.buckets[key] = {
                "tokens": max_requests - 1,
                "last_check": now,
                "max_tokens": max_requests,
                "refill_rate": max_requests / window_seconds,
            }
            return True, 0, max_requests - 1

        bucket = self.buckets[key]
        elapsed = now - bucket["last_check"]
        bucket["tokens"] = min(bucket["max_tokens"], bucket["tokens"] + elapsed * bucket["refill_rate"])
        bucket["last_check"] = now

        if bucket["tokens"] >= 1:
            bucket["tokens"] -= 1
            return True, 0, int(bucket["tokens"])
        retry_after = max(1, int((1 - bucket["tokens"]) / bucket["refill_rate"]))
        return False, retry_after, 0


class RateLimiter:
    def __init__(self, settings: RateLimitSettings | None = None, clock: Callable[[], float] = time.time):
        self.settings = settings or RateLimitSettings()
        self.clock = clock
        self.memory = InMemoryRateLimiter(clock=clock)

    def _limits(self, tier: RateLimitTier) -> tuple[int, int]:
        if tier == RateLimitTier.USER:
            return self.settings.user_max_requests, self.settings.window_seconds
        return self.settings.anonymous_max_requests, self.settings.window_seconds

    def check_rate_limit(self, identifier: str, tier: RateLimitTier = RateLimitTier.ANONYMOUS) -> RateLimitResult:
        if tier == RateLimitTier.ADMIN:
            return RateLimitResult(
                allowed=True,
                tier=tier,
                limit=1000000,
                remaining=1000000,
                reset_at=int(self.clock()) + 3600,
            )
        max_requests, window = self._limits(tier)
        allowed, retry_after, remaining = self.memory.check_rate_limit(f"{tier.value}:{identifier}", max_requests, window)
        return RateLimitResult(
            allowed=allowed,
            retry_after=retry_after,
            tier=tier,
            limit=max_requests,
            remaining=remaining,
            reset_at=int(self.clock()) + window,
        )

    @staticmethod
    def get_client_identifier(
        ip_address: str,
        user_id: str | None = None,
        is_admin_key: bool = False,
    ) -> tuple[str, RateLimitTier]:
        if is_admin_key:
            return "admin", RateLimitTier.ADMIN
        if user_id:
            return hashlib.sha256(user_id.encode()).hexdigest()[:16], RateLimitTier.USER
        return ip_address, RateLimitTier.ANONYMOUS


_rate_limiter: RateLimiter | None = None


def get_rate_limiter(settings: RateLimitSettings | None = None) -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(settings)
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Drop the global limiter (tests)."""
    global _rate_limiter
    _rate_limiter = None
