"""Tests for rate_limiter.py -- sliding-window admission control."""

import time

import pytest

from errors import RateLimitExceededError
from rate_limiter import RateLimiter, RateLimiterRegistry


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# =========================================================================
# Call limit
# =========================================================================


class TestCallLimit:
    async def test_admits_up_to_max_calls(self) -> None:
        limiter = RateLimiter("claude", max_calls=2, window_seconds=60.0, clock=FakeClock())
        await limiter.acquire()
        await limiter.acquire()
        assert not limiter.can_acquire()

    async def test_window_slides(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter("claude", max_calls=1, window_seconds=60.0, clock=clock)
        await limiter.acquire()
        assert limiter.time_until_available() == pytest.approx(60.0)

        clock.now = 61.0
        assert limiter.can_acquire()
        assert limiter.time_until_available() == 0.0

    async def test_burst_then_capacity_returns_one_call_at_a_time(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter("claude", max_calls=3, window_seconds=60.0, clock=clock)
        for offset in (0.0, 10.0, 20.0):
            clock.now = offset
            await limiter.acquire()
        assert not limiter.can_acquire()

        clock.now = 60.0
        assert limiter.can_acquire()
        await limiter.acquire()
        assert not limiter.can_acquire()
        assert limiter.time_until_available() == pytest.approx(10.0)

    async def test_deadline_raises(self) -> None:
        limiter = RateLimiter("claude", max_calls=1, window_seconds=60.0, clock=FakeClock())
        await limiter.acquire()
        with pytest.raises(RateLimitExceededError):
            await limiter.acquire(max_wait_seconds=0.0)

    async def test_waits_for_capacity(self) -> None:
        limiter = RateLimiter("transport", max_calls=1, window_seconds=0.05)
        await limiter.acquire()
        started = time.monotonic()
        await limiter.acquire(max_wait_seconds=1.0)
        assert time.monotonic() - started >= 0.03


# =========================================================================
# Token limit
# =========================================================================


class TestTokenLimit:
    async def test_token_budget_blocks(self) -> None:
        limiter = RateLimiter(
            "claude", max_calls=10, window_seconds=60.0, max_tokens=1000, clock=FakeClock()
        )
        await limiter.acquire(estimated_tokens=800)
        assert limiter.can_acquire(estimated_tokens=200)
        assert not limiter.can_acquire(estimated_tokens=201)

    async def test_record_usage_replaces_estimate(self) -> None:
        limiter = RateLimiter(
            "claude", max_calls=10, window_seconds=60.0, max_tokens=1000, clock=FakeClock()
        )
        await limiter.acquire(estimated_tokens=900)
        limiter.record_usage(100)
        assert limiter.get_status()["current_tokens"] == 100
        assert limiter.can_acquire(estimated_tokens=900)

    def test_reset(self) -> None:
        limiter = RateLimiter("claude", max_calls=1, clock=FakeClock())
        limiter._call_log.append((0.0, 0))
        limiter.reset()
        assert limiter.can_acquire()


# =========================================================================
# Registry
# =========================================================================


class TestRegistry:
    def test_one_limiter_per_target(self) -> None:
        registry = RateLimiterRegistry(max_calls=5, window_seconds=1.0)
        claude = registry.get("claude")
        assert registry.get("claude") is claude
        assert registry.get("grok") is not claude
        assert claude.max_calls == 5

    async def test_status_lists_all_limiters(self) -> None:
        registry = RateLimiterRegistry(max_calls=5, clock=FakeClock())
        await registry.get("claude").acquire()
        registry.get("grok")
        status = {s["target"]: s for s in registry.get_status()}
        assert status["claude"]["current_calls"] == 1
        assert status["grok"]["current_calls"] == 0
