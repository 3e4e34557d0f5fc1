from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from retrieval_engine.services.result_cache import (
    TTL_SECONDS,
    DataKind,
    FileResultCache,
    InMemoryResultCache,
    RedisResultCache,
    cache_key,
    cache_or_fetch,
)


class _Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key):
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        self.values[key] = value
        self.ttls[key] = ttl

    async def delete(self, key):
        self.values.pop(key, None)


def test_cache_key_is_case_insensitive_on_entity():
    assert cache_key("yahoo", "NFLX", DataKind.QUOTE) == "yahoo:nflx:quote"


@pytest.mark.asyncio
async def test_memory_entry_expires_after_ttl():
    clock = _Clock()
    cache = InMemoryResultCache(clock=clock)
    await cache.set("yahoo", "AAPL", DataKind.QUOTE, {"price": 1})

    clock.now += TTL_SECONDS[DataKind.QUOTE] - 1
    assert await cache.get("yahoo", "aapl", DataKind.QUOTE) == {"price": 1}

    clock.now += 1
    assert await cache.get("yahoo", "AAPL", DataKind.QUOTE) is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_memory_cleanup_counts_expired_entries():
    clock = _Clock()
    cache = InMemoryResultCache(clock=clock)
    await cache.set("yahoo", "AAPL", DataKind.QUOTE, 1)
    await cache.set("yahoo", "AAPL", DataKind.FUNDAMENTALS, 2)

    clock.now += 120
    assert cache.cleanup() == 1
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_file_cache_round_trip_and_expiry(tmp_path):
    clock = _Clock()
    cache = FileResultCache(tmp_path, clock=clock)
    await cache.set("coingecko", "bitcoin", DataKind.SEARCH, [{"id": "bitcoin"}])

    files = list(tmp_path.glob("*.json"))
    assert len(files) == 1
    record = json.loads(files[0].read_text())
    assert record["key"] == "coingecko:bitcoin:search"
    assert await cache.get("coingecko", "Bitcoin", DataKind.SEARCH) == [{"id": "bitcoin"}]

    clock.now += TTL_SECONDS[DataKind.SEARCH]
    assert await cache.get("coingecko", "bitcoin", DataKind.SEARCH) is None
    assert list(tmp_path.glob("*.json")) == []


@pytest.mark.asyncio
async def test_redis_cache_uses_ttl_per_kind():
    redis = _FakeRedis()
    cache = RedisResultCache(redis, prefix="t:")
    await cache.set("yahoo", "MSFT", DataKind.HISTORY_1D, [{"close": 1.0}])

    assert redis.ttls == {"t:cache:yahoo:msft:history_1d": 300}
    assert await cache.get("yahoo", "msft", DataKind.HISTORY_1D) == [{"close": 1.0}]

    await cache.invalidate("yahoo", "msft", DataKind.HISTORY_1D)
    assert await cache.get("yahoo", "msft", DataKind.HISTORY_1D) is None


@pytest.mark.asyncio
async def test_cache_or_fetch_hits_cache_on_second_call():
    cache = InMemoryResultCache()
    fetcher = AsyncMock(return_value={"price": 10})

    first = await cache_or_fetch(cache, "yahoo", "IBM", DataKind.QUOTE, fetcher)
    second = await cache_or_fetch(cache, "yahoo", "ibm", DataKind.QUOTE, fetcher)

    assert first == second == {"price": 10}
    fetcher.assert_awaited_once()


@pytest.mark.asyncio
async def test_cache_or_fetch_does_not_store_none():
    cache = InMemoryResultCache()
    fetcher = AsyncMock(return_value=None)

    await cache_or_fetch(cache, "yahoo", "ZZZZ", DataKind.QUOTE, fetcher)
    await cache_or_fetch(cache, "yahoo", "ZZZZ", DataKind.QUOTE, fetcher)

    assert fetcher.await_count == 2
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_cache_failures_are_treated_as_misses():
    broken = AsyncMock()
    broken.get.side_effect = ConnectionError("redis down")
    broken.set.side_effect = ConnectionError("redis down")
    fetcher = AsyncMock(return_value={"price": 3})

    assert await cache_or_fetch(broken, "yahoo", "T", DataKind.QUOTE, fetcher) == {"price": 3}
    fetcher.assert_awaited_once()


@pytest.mark.asyncio
async def test_fetcher_errors_propagate():
    fetcher = AsyncMock(side_effect=TimeoutError("slow"))
    with pytest.raises(TimeoutError):
        await cache_or_fetch(InMemoryResultCache(), "yahoo", "T", DataKind.QUOTE, fetcher)
