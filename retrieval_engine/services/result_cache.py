"""TTL cache for provider lookups (quotes, price history, symbol searches).

Keys are ``provider:entity_key.lower():data_kind`` and never carry user or
session scope, so one entry is shared by every caller. The cache is advisory:
``cache_or_fetch`` treats any backend failure as a miss.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import Enum
from hashlib import sha256
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger

from retrieval_engine.config import settings

CACHE_VERSION = 1


class DataKind(str, Enum):
    QUOTE = "quote"
    HISTORY_1D = "history_1d"
    HISTORY_5D = "history_5d"
    HISTORY_1MO = "history_1mo"
    HISTORY_1Y = "history_1y"
    FUNDAMENTALS = "fundamentals"
    NEWS = "news"
    SEARCH = "search"


TTL_SECONDS: dict[DataKind, int] = {
    DataKind.QUOTE: 60,
    DataKind.HISTORY_1D: 300,
    DataKind.HISTORY_5D: 3600,
    DataKind.HISTORY_1MO: 3600,
    DataKind.HISTORY_1Y: 3600,
    DataKind.FUNDAMENTALS: 86400,
    DataKind.NEWS: 900,
    DataKind.SEARCH: 600,
}


def cache_key(provider: str, entity_key: str, data_kind: DataKind) -> str:
    return f"{provider}:{entity_key.lower()}:{data_kind.value}"


@dataclass(slots=True)
class CacheEntry:
    provider: str
    entity_key: str
    data_kind: DataKind
    payload: Any
    stored_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ResultCache(Protocol):
    async def get(self, provider: str, entity_key: str, data_kind: DataKind) -> Any | None: ...

    async def set(self, provider: str, entity_key: str, data_kind: DataKind, payload: Any) -> None: ...

    async def invalidate(self, provider: str, entity_key: str, data_kind: DataKind) -> None: ...


class InMemoryResultCache:
    """Process-local cache. Entries are not shared across workers."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock

    async def get(self, provider: str, entity_key: str, data_kind: DataKind) -> Any | None:
        key = cache_key(provider, entity_key, data_kind)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            return None
        return entry.payload

    async def set(self, provider: str, entity_key: str, data_kind: DataKind, payload: Any) -> None:
        now = self._clock()
        self._entries[cache_key(provider, entity_key, data_kind)] = CacheEntry(
            provider=provider,
            entity_key=entity_key.lower(),
            data_kind=data_kind,
            payload=payload,
            stored_at=now,
            expires_at=now + TTL_SECONDS[data_kind],
        )

    async def invalidate(self, provider: str, entity_key: str, data_kind: DataKind) -> None:
        self._entries.pop(cache_key(provider, entity_key, data_kind), None)

    def cleanup(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class FileResultCache:
    """JSON files on disk, one per key, named by the sha256 of the key."""

    def __init__(self, cache_dir: str | Path | None = None, clock: Callable[[], float] = time.time):
        self._dir = Path(cache_dir or settings.result_cache_dir)
        self._clock = clock

    def _path(self, key: str) -> Path:
        digest = sha256(f"v{CACHE_VERSION}|{key}".encode("utf-8")).hexdigest()
        return self._dir / f"{digest}.json"

    async def get(self, provider: str, entity_key: str, data_kind: DataKind) -> Any | None:
        path = self._path(cache_key(provider, entity_key, data_kind))
        if not path.exists():
            return None
        payload = json.loads(path.read_text(encoding="utf-8"))
        expires_at = payload.get("expires_at")
        if not isinstance(expires_at, (int, float)) or self._clock() >= expires_at:
            path.unlink(missing_ok=True)
            return None
        return payload.get("payload")

    async def set(self, provider: str, entity_key: str, data_kind: DataKind, payload: Any) -> None:
        key = cache_key(provider, entity_key, data_kind)
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        now = self._clock()
        record = {
            "version": CACHE_VERSION,
            "key": key,
            "stored_at": now,
            "expires_at": now + TTL_SECONDS[data_kind],
            "payload": payload,
        }
        path.write_text(json.dumps(record, ensure_ascii=True), encoding="utf-8")

    async def invalidate(self, provider: str, entity_key: str, data_kind: DataKind) -> None:
        self._path(cache_key(provider, entity_key, data_kind)).unlink(missing_ok=True)

    def cleanup(self) -> int:
        if not self._dir.exists():
            return 0
        removed = 0
        now = self._clock()
        for path in self._dir.glob("*.json"):
            try:
                expires_at = json.loads(path.read_text(encoding="utf-8")).get("expires_at", 0)
            except (OSError, ValueError):
                expires_at = 0
            if not isinstance(expires_at, (int, float)) or now >= expires_at:
                path.unlink(missing_ok=True)
                removed += 1
        return removed


class RedisResultCache:
    """Shared cache for multi-process deployments; Redis enforces the TTL."""

    def __init__(self, redis_client: Any = None, *, url: str | None = None, prefix: str | None = None):
        if redis_client is None:
            from redis import asyncio as redis_asyncio

            redis_client = redis_asyncio.from_url(url or settings.redis_url, decode_responses=True)
        self._redis = redis_client
        self._prefix = f"{prefix if prefix is not None else settings.redis_key_prefix}cache:"

    def _key(self, provider: str, entity_key: str, data_kind: DataKind) -> str:
        return self._prefix + cache_key(provider, entity_key, data_kind)

    async def get(self, provider: str, entity_key: str, data_kind: DataKind) -> Any | None:
        raw = await self._redis.get(self._key(provider, entity_key, data_kind))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, provider: str, entity_key: str, data_kind: DataKind, payload: Any) -> None:
        await self._redis.setex(
            self._key(provider, entity_key, data_kind),
            TTL_SECONDS[data_kind],
            json.dumps(payload),
        )

    async def invalidate(self, provider: str, entity_key: str, data_kind: DataKind) -> None:
        await self._redis.delete(self._key(provider, entity_key, data_kind))


async def cache_or_fetch(
    cache: ResultCache | None,
    provider: str,
    entity_key: str,
    data_kind: DataKind,
    fetcher: Callable[[], Awaitable[Any]],
) -> Any:
    """Return a cached payload or call ``fetcher`` and store its result.

    Cache errors never reach the caller. ``None`` results are not stored.
    Fetcher errors propagate unchanged.
    """
    if cache is not None:
        try:
            cached = await cache.get(provider, entity_key, data_kind)
        except Exception as exc:
            logger.warning(f"Result cache read failed for {provider}:{entity_key}: {exc}")
            cached = None
        if cached is not None:
            logger.debug(f"Result cache hit {cache_key(provider, entity_key, data_kind)}")
            return cached

    payload = await fetcher()

    if cache is not None and payload is not None:
        try:
            await cache.set(provider, entity_key, data_kind, payload)
        except Exception as exc:
            logger.warning(f"Result cache write failed for {provider}:{entity_key}: {exc}")
    return payload


_cache: ResultCache | None = None
_cache_initialized = False


def get_result_cache() -> ResultCache | None:
    """Get or create the configured result cache; ``None`` when disabled."""
    global _cache, _cache_initialized
    if _cache_initialized:
        return _cache

    backend = settings.result_cache_backend.lower().strip()
    if backend == "redis":
        _cache = RedisResultCache()
    elif backend == "file":
        _cache = FileResultCache()
    elif backend == "memory":
        _cache = InMemoryResultCache()
    elif backend == "none":
        _cache = None
    else:
        raise ValueError(f"Unsupported RESULT_CACHE_BACKEND: {settings.result_cache_backend}")
    _cache_initialized = True
    logger.info(f"Result cache backend: {backend}")
    return _cache


def reset_result_cache() -> None:
    global _cache, _cache_initialized
    _cache = None
    _cache_initialized = False
