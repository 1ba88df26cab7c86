"""Per-client rate limiting with a token bucket."""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol


class RateLimitResult(Enum):
    """Result of a rate limit check."""

    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass
class RateLimitInfo:
    """Information about rate limit status."""

    result: RateLimitResult
    limit: int
    remaining: int
    retry_after: float | None = None  # Seconds until allowed

    @property
    def is_allowed(self) -> bool:
        return self.result == RateLimitResult.ALLOWED


class RateLimiter(Protocol):
    """Protocol for rate limiter implementations."""

    async def check(self, key: str) -> RateLimitInfo:
        """Consume one request for ``key`` (e.g. a client IP)."""
        ...

    async def reset(self, key: str) -> None:
        ...


class TokenBucketRateLimiter:
    """Token bucket rate limiter.

    Allows bursts up to the bucket size while maintaining
    a steady rate of requests over time.

    Example:
        limiter = TokenBucketRateLimiter.per_minute(100, burst=10)
        info = await limiter.check("203.0.113.7")
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
        max_buckets: int = 10000,
    ) -> None:
        """Initialize token bucket.

        Args:
            rate: Tokens added per second
            burst: Maximum bucket capacity
            clock: Monotonic seconds source
            max_buckets: Bucket count that triggers pruning of full buckets
        """
        if rate <= 0 or burst < 1:
            raise ValueError("rate must be positive and burst at least 1")
        self.rate = rate
        self.burst = burst
        self.max_buckets = max_buckets
        self._clock = clock
        self._buckets: dict[str, tuple[float, float]] = {}  # (tokens, last_update)

    @classmethod
    def per_minute(
        cls,
        requests_per_minute: int,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> "TokenBucketRateLimiter":
        return cls(rate=requests_per_minute / 60.0, burst=burst, clock=clock)

    def _refill(self, key: str, now: float) -> float:
        if key not in self._buckets:
            return float(self.burst)
        tokens, last_update = self._buckets[key]
        return min(self.burst, tokens + (now - last_update) * self.rate)

    async def check(self, key: str) -> RateLimitInfo:
        """Check if request is allowed, consuming a token."""
        now = self._clock()
        tokens = self._refill(key, now)

        if tokens < 1:
            self._buckets[key] = (tokens, now)
            return RateLimitInfo(
                result=RateLimitResult.DENIED,
                limit=self.burst,
                remaining=0,
                retry_after=(1 - tokens) / self.rate,
            )

        tokens -= 1
        self._buckets[key] = (tokens, now)
        if len(self._buckets) > self.max_buckets:
            self.prune()

        return RateLimitInfo(
            result=RateLimitResult.ALLOWED,
            limit=self.burst,
            remaining=int(tokens),
        )

    def prune(self) -> int:
        """Drop buckets that have refilled completely."""
        now = self._clock()
        full = [key for key in self._buckets if self._refill(key, now) >= self.burst]
        for key in full:
            del self._buckets[key]
        return len(full)

    async def reset(self, key: str) -> None:
        """Reset bucket to full capacity."""
        self._buckets.pop(key, None)
