from __future__ import annotations

import pytest

from retrieval_engine.services.rate_limiter import InMemoryRateLimiter, RedisRateLimiter


class _Clock:
    def __init__(self, now: float = 600.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakeRedis:
    def __init__(self, fail: bool = False):
        self.counts: dict[str, int] = {}
        self.expiries: dict[str, int] = {}
        self.fail = fail

    async def incr(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, seconds):
        self.expiries[key] = seconds


@pytest.mark.asyncio
async def test_memory_limiter_blocks_within_window_and_resets():
    clock = _Clock()
    limiter = InMemoryRateLimiter(limit=2, window_seconds=60, clock=clock)

    first = await limiter.acquire("planner")
    second = await limiter.acquire("planner")
    third = await limiter.acquire("planner")

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert third.allowed is False
    assert third.reset_at == 660.0

    clock.now = 661.0
    assert (await limiter.acquire("planner")).allowed is True


@pytest.mark.asyncio
async def test_memory_limiter_keys_are_independent():
    limiter = InMemoryRateLimiter(limit=1, window_seconds=60, clock=_Clock())
    assert (await limiter.acquire("planner")).allowed
    assert (await limiter.acquire("resolver")).allowed
    assert not (await limiter.acquire("planner")).allowed


@pytest.mark.asyncio
async def test_redis_limiter_counts_and_sets_expiry_once():
    redis = _FakeRedis()
    limiter = RedisRateLimiter(redis, limit=1, window_seconds=60, prefix="t:", clock=_Clock())

    first = await limiter.acquire("planner")
    second = await limiter.acquire("planner")

    assert first.allowed is True
    assert second.allowed is False
    assert redis.expiries == {"t:ratelimit:planner:600": 60}


@pytest.mark.asyncio
async def test_redis_limiter_fails_open():
    limiter = RedisRateLimiter(_FakeRedis(fail=True), limit=1, window_seconds=60, clock=_Clock())

    decision = await limiter.acquire("planner")

    assert decision.allowed is True
    assert decision.remaining == 1
