"""Fixed-window request limiter keyed by client address.

State lives in process memory. Callers depend only on ``RateLimiter.check``
so a shared store can replace it for multi-instance deployments.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import HttpError


logger = logging.getLogger(__name__)

HARD_BUCKET_LIMIT = 50_000
MIN_CLEANUP_INTERVAL_MS = 60_000


@dataclass
class RateLimitBucket:
    window_started_at_ms: int
    count: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_ms: int
    retry_after_ms: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        return {
            "x-ratelimit-limit": str(self.limit),
            "x-ratelimit-remaining": str(max(0, self.remaining)),
            "x-ratelimit-reset-ms": str(max(0, self.reset_ms)),
        }


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class RateLimiter:
    """One bucket map per limiter instance; each route group gets its own."""

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        name: str = "default",
        clock: Callable[[], int] = _monotonic_ms,
        hard_bucket_limit: int = HARD_BUCKET_LIMIT,
    ):
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.name = name
        self.clock = clock
        self.hard_bucket_limit = hard_bucket_limit
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._last_cleanup_at_ms: Optional[int] = None

    def __len__(self) -> int:
        return len(self._buckets)

    def check(self, client_key: str) -> RateLimitDecision:
        now = self.clock()
        bucket = self._buckets.get(client_key)

        if bucket is None or now - bucket.window_started_at_ms >= self.window_ms:
            self._buckets[client_key] = RateLimitBucket(window_started_at_ms=now, count=1)
            self._cleanup(now)
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - 1,
                reset_ms=self.window_ms,
            )

        reset_ms = max(0, self.window_ms - (now - bucket.window_started_at_ms))
        if bucket.count >= self.max_requests:
            return RateLimitDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_ms=reset_ms,
                retry_after_ms=reset_ms,
            )

        bucket.count += 1
        self._cleanup(now)
        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - bucket.count),
            reset_ms=reset_ms,
        )

    def enforce(self, client_key: str, message: str) -> RateLimitDecision:
        """``check`` that raises a 429 ``HttpError`` on rejection."""
        decision = self.check(client_key)
        if not decision.allowed:
            logger.warning(
                "rate limit exceeded",
                extra={"limiter": self.name, "client_key": client_key, "retry_after_ms": decision.retry_after_ms},
            )
            raise HttpError(
                429,
                message,
                details={
                    "retry_after_ms": decision.retry_after_ms,
                    "window_ms": self.window_ms,
                    "max_requests": self.max_requests,
                },
                headers=decision.headers(),
            )
        return decision

    def reset(self) -> None:
        self._buckets.clear()
        self._last_cleanup_at_ms = None

    def _cleanup(self, now: int) -> None:
        cleanup_every_ms = max(self.window_ms, MIN_CLEANUP_INTERVAL_MS)
        due = self._last_cleanup_at_ms is None or now - self._last_cleanup_at_ms >= cleanup_every_ms
        if not due and len(self._buckets) < self.hard_bucket_limit:
            return

        self._last_cleanup_at_ms = now
        expired = [
            key for key, bucket in self._buckets.items() if now - bucket.window_started_at_ms >= self.window_ms
        ]
        for key in expired:
            del self._buckets[key]

        if len(self._buckets) > self.hard_bucket_limit:
            logger.warning("rate limit bucket map over hard limit; clearing", extra={"limiter": self.name})
            self._buckets.clear()
