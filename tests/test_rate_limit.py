"""Tests for the fixed-window rate limiters."""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, MagicMock

import pytest

from sessionward.service.errors import RateLimited
from sessionward.service.rate_limit import (
    MemoryRateLimiter,
    RateDecision,
    RedisRateLimiter,
)
from sessionward.service.runtime import check_rate_limit
from sessionward.storage.redis_cache import RedisCache


@pytest.fixture
def limiter(clock):
    return MemoryRateLimiter(clock)


class TestFixedWindow:
    async def test_five_allowed_then_denied(self, limiter):
        decisions = [await limiter.admit("login:a@example.com", 5, 60_000) for _ in range(6)]

        assert [d.allowed for d in decisions] == [True] * 5 + [False]
        assert decisions[-1].retry_after_ms == 60_000
        assert decisions[-1].retry_after_seconds == 60

    async def test_window_resets_after_expiry(self, limiter, clock):
        for _ in range(6):
            await limiter.admit("id", 5, 60_000)
        clock.advance(60)

        decision = await limiter.admit("id", 5, 60_000)

        assert decision.allowed
        assert decision.count == 1
        assert decision.reset_at_ms == clock.now_ms() + 60_000

    async def test_retry_after_shrinks_with_time(self, limiter, clock):
        for _ in range(2):
            await limiter.admit("id", 1, 10_000)
        clock.advance(milliseconds=7_250)

        decision = await limiter.admit("id", 1, 10_000)

        assert not decision.allowed
        assert decision.retry_after_ms == 2_750
        assert decision.retry_after_seconds == 3

    async def test_identifiers_are_independent(self, limiter):
        await limiter.admit("a", 1, 1_000)
        assert not (await limiter.admit("a", 1, 1_000)).allowed
        assert (await limiter.admit("b", 1, 1_000)).allowed

    async def test_rejects_invalid_arguments(self, limiter):
        with pytest.raises(ValueError):
            await limiter.admit("a", 0, 1_000)
        with pytest.raises(ValueError):
            await limiter.admit("a", 1, 0)

    def test_remaining(self):
        decision = RateDecision(allowed=True, count=2, limit=5, reset_at_ms=0)
        assert decision.remaining == 3
        assert decision.retry_after_seconds == 0


class TestConcurrency:
    def test_threads_never_exceed_limit(self, limiter):
        barrier = threading.Barrier(16)

        def hit(_):
            barrier.wait()
            return limiter.hit("shared", 10, 60_000).allowed

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(hit, range(160)))

        assert sum(results) == 10

    async def test_gathered_calls_never_exceed_limit(self, limiter):
        decisions = await asyncio.gather(
            *(limiter.admit("shared", 7, 60_000) for _ in range(50))
        )
        assert sum(d.allowed for d in decisions) == 7


class TestAdministration:
    async def test_snapshot_and_clear(self, limiter, clock):
        await limiter.admit("b", 5, 1_000)
        await limiter.admit("a", 5, 60_000)
        await limiter.admit("a", 5, 60_000)
        clock.advance(2)

        snapshot = await limiter.snapshot()

        assert [(s.identifier, s.count, s.expired) for s in snapshot] == [
            ("a", 2, False),
            ("b", 1, True),
        ]
        assert await limiter.clear() == 2
        assert await limiter.snapshot() == []

    async def test_purge_expired(self, limiter, clock):
        await limiter.admit("short", 5, 1_000)
        await limiter.admit("long", 5, 60_000)
        clock.advance(5)

        assert limiter.purge_expired() == 1
        assert [s.identifier for s in await limiter.snapshot()] == ["long"]

    async def test_admit_after_clear_starts_fresh(self, limiter):
        await limiter.admit("a", 1, 60_000)
        await limiter.clear()
        assert (await limiter.admit("a", 1, 60_000)).allowed


class TestRedisLimiter:
    """The Redis limiter delegates counting to the cache's atomic script."""

    @pytest.fixture
    def cache(self):
        cache = MagicMock(spec=RedisCache)
        cache.incr_fixed_window = AsyncMock()
        cache.clear_windows = AsyncMock(return_value=3)
        cache.list_windows = AsyncMock()
        return cache

    async def test_allowed_within_limit(self, cache, clock):
        cache.incr_fixed_window.return_value = (3, clock.now_ms() + 60_000)
        limiter = RedisRateLimiter(cache, clock)

        decision = await limiter.admit("login:a", 5, 60_000)

        assert decision.allowed
        cache.incr_fixed_window.assert_awaited_once_with("login:a", 60_000, clock.now_ms())

    async def test_denied_over_limit(self, cache, clock):
        cache.incr_fixed_window.return_value = (6, clock.now_ms() + 15_000)
        limiter = RedisRateLimiter(cache, clock)

        decision = await limiter.admit("login:a", 5, 60_000)

        assert not decision.allowed
        assert decision.retry_after_ms == 15_000

    async def test_snapshot_and_clear(self, cache, clock):
        cache.list_windows.return_value = [
            {"identifier": "login:a", "count": 2, "reset_at_ms": clock.now_ms() + 1_000},
            {"identifier": "login:0", "count": 9, "reset_at_ms": clock.now_ms() - 1},
        ]
        limiter = RedisRateLimiter(cache, clock)

        snapshot = await limiter.snapshot()

        assert [(s.identifier, s.expired) for s in snapshot] == [
            ("login:0", True),
            ("login:a", False),
        ]
        assert await limiter.clear() == 3

    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("login:a@example.com")
        assert key.startswith("rate:window:")
        assert "example" not in key


class TestCheckRateLimit:
    async def test_prefixes_route_and_uses_configured_window(self, runtime):
        decision = await check_rate_limit(runtime, "login", "a@example.com", 2)

        assert decision.allowed
        snapshot = await runtime.rate_limiter.snapshot()
        assert snapshot[0].identifier == "login:a@example.com"
        assert decision.reset_at_ms - runtime.clock.now_ms() == (
            runtime.settings.rate_limit_window_seconds * 1000
        )

    def test_rate_limited_error_carries_retry_hint(self):
        exc = RateLimited(1_200)
        assert exc.status_code == 429
        assert exc.retry_after_seconds == 2
        assert exc.detail == {"retry_after_seconds": 2}
