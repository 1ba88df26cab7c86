"""Tests for rate limiting."""

import pytest

from subspace.rate_limiting import RateLimitResult, TokenBucketRateLimiter


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def ticker():
    return FakeMonotonic()


class TestTokenBucketRateLimiter:
    """Tests for TokenBucketRateLimiter."""

    @pytest.mark.asyncio
    async def test_burst(self, ticker):
        """Test that a full bucket allows a burst."""
        limiter = TokenBucketRateLimiter(rate=1.0, burst=3, clock=ticker)

        results = [await limiter.check("ip") for _ in range(4)]

        assert [r.result for r in results] == [
            RateLimitResult.ALLOWED,
            RateLimitResult.ALLOWED,
            RateLimitResult.ALLOWED,
            RateLimitResult.DENIED,
        ]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert results[-1].retry_after == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_refill(self, ticker):
        """Test that tokens refill at the configured rate."""
        limiter = TokenBucketRateLimiter(rate=2.0, burst=1, clock=ticker)
        assert (await limiter.check("ip")).is_allowed
        assert not (await limiter.check("ip")).is_allowed

        ticker.now += 0.5

        assert (await limiter.check("ip")).is_allowed

    @pytest.mark.asyncio
    async def test_refill_capped_at_burst(self, ticker):
        """Test that idle time does not exceed the bucket size."""
        limiter = TokenBucketRateLimiter(rate=10.0, burst=2, clock=ticker)
        await limiter.check("ip")
        ticker.now += 3600

        info = await limiter.check("ip")

        assert info.remaining == 1

    @pytest.mark.asyncio
    async def test_keys_independent(self, ticker):
        """Test that each key has its own bucket."""
        limiter = TokenBucketRateLimiter(rate=1.0, burst=1, clock=ticker)

        assert (await limiter.check("a")).is_allowed
        assert (await limiter.check("b")).is_allowed
        assert not (await limiter.check("a")).is_allowed

    @pytest.mark.asyncio
    async def test_reset(self, ticker):
        """Test that reset refills a bucket."""
        limiter = TokenBucketRateLimiter(rate=1.0, burst=1, clock=ticker)
        await limiter.check("ip")

        await limiter.reset("ip")

        assert (await limiter.check("ip")).is_allowed

    @pytest.mark.asyncio
    async def test_prune(self, ticker):
        """Test that refilled buckets are dropped."""
        limiter = TokenBucketRateLimiter(rate=1.0, burst=5, clock=ticker, max_buckets=2)
        await limiter.check("a")
        await limiter.check("b")
        ticker.now += 10

        await limiter.check("c")

        assert set(limiter._buckets) == {"c"}

    def test_per_minute(self, ticker):
        """Test the per-minute constructor."""
        limiter = TokenBucketRateLimiter.per_minute(120, burst=10, clock=ticker)

        assert limiter.rate == pytest.approx(2.0)
        assert limiter.burst == 10

    @pytest.mark.parametrize("rate,burst", [(0, 1), (-1, 1), (1, 0)])
    def test_invalid_parameters(self, rate, burst):
        """Test that nonsensical limits are refused."""
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(rate=rate, burst=burst)
