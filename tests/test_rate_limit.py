"""Tests for the sliding-window rate limiters."""

import asyncio

import pytest

from clip_sense.governor import CapabilityKind, RateLimiterRegistry, SlidingWindowRateLimiter


class FakeClock:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def limiter(clock: FakeClock, max_calls: int = 2, window: float = 10.0) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter("vision", max_calls, window, clock=clock, sleep=clock.sleep)


class TestSlidingWindowRateLimiter:
    async def test_acquire_within_limit_does_not_wait(self) -> None:
        clock = FakeClock()
        rl = limiter(clock)
        await rl.acquire()
        await rl.acquire()
        assert clock.sleeps == []
        assert rl.get_usage().current == 2

    async def test_acquire_over_limit_waits_for_window(self) -> None:
        clock = FakeClock()
        rl = limiter(clock)
        await rl.acquire()
        clock.now = 3.0
        await rl.acquire()
        await rl.acquire()

        # Waited until the first call (t=0) left the 10s window
        assert len(clock.sleeps) == 1
        assert clock.sleeps[0] == pytest.approx(10.1 - 3.0)
        assert clock.now >= 10.0

    async def test_never_more_than_max_in_any_window(self) -> None:
        clock = FakeClock()
        rl = limiter(clock, max_calls=3, window=5.0)
        granted: list[float] = []
        for _ in range(10):
            await rl.acquire()
            granted.append(clock.now)

        for i, start in enumerate(granted):
            in_window = [t for t in granted[i:] if t < start + 5.0]
            assert len(in_window) <= 3

    async def test_usage_prunes_expired(self) -> None:
        clock = FakeClock()
        rl = limiter(clock)
        await rl.acquire()
        clock.now = 10.5
        usage = rl.get_usage()
        assert usage.current == 0
        assert usage.percentage == 0

    async def test_percentage(self) -> None:
        clock = FakeClock()
        rl = limiter(clock, max_calls=4)
        for _ in range(3):
            await rl.acquire()
        assert rl.get_usage().percentage == 75

    def test_rejects_invalid_limits(self) -> None:
        with pytest.raises(ValueError, match="max_calls"):
            SlidingWindowRateLimiter("chat", 0, 1.0)
        with pytest.raises(ValueError, match="window_seconds"):
            SlidingWindowRateLimiter("chat", 1, 0.0)


class TestRateLimiterRegistry:
    def test_from_settings_has_every_kind(self) -> None:
        registry = RateLimiterRegistry.from_settings()
        assert set(registry.usage()) == {kind.value for kind in CapabilityKind}

    def test_get_by_kind_or_name(self) -> None:
        registry = RateLimiterRegistry.from_settings()
        assert registry.get(CapabilityKind.METADATA) is registry.get("metadata")

    def test_get_unknown_raises(self) -> None:
        registry = RateLimiterRegistry()
        with pytest.raises(KeyError, match="no rate limiter"):
            registry.get("vision")

    async def test_acquire_counts_against_kind(self) -> None:
        clock = FakeClock()
        registry = RateLimiterRegistry({"chat": limiter(clock, max_calls=5)})
        await registry.acquire(CapabilityKind.CHAT)
        assert registry.usage()["chat"].current == 1
