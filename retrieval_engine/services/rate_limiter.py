"""Fixed-window rate limiting for model calls.

``InMemoryRateLimiter`` counts per process, so N workers allow N times the
configured limit. Use ``RedisRateLimiter`` when the limit must hold across
processes.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from loguru import logger

from retrieval_engine.config import settings


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter(Protocol):
    async def acquire(self, key: str) -> RateLimitDecision: ...


def _window_start(now: float, window_seconds: int) -> int:
    return int(math.floor(now / window_seconds) * window_seconds)


class InMemoryRateLimiter:
    def __init__(
        self,
        limit: int | None = None,
        window_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.limit = limit if limit is not None else settings.planner_rate_limit
        self.window_seconds = window_seconds or settings.planner_rate_window_seconds
        self._clock = clock
        self._buckets: dict[tuple[str, int], int] = {}

    async def acquire(self, key: str) -> RateLimitDecision:
        now = self._clock()
        window = _window_start(now, self.window_seconds)
        reset_at = float(window + self.window_seconds)

        # Drop buckets from earlier windows.
        for bucket in [b for b in self._buckets if b[1] < window]:
            del self._buckets[bucket]

        count = self._buckets.get((key, window), 0)
        if count >= self.limit:
            return RateLimitDecision(allowed=False, remaining=0, reset_at=reset_at)
        self._buckets[(key, window)] = count + 1
        return RateLimitDecision(allowed=True, remaining=self.limit - count - 1, reset_at=reset_at)


class RedisRateLimiter:
    """INCR on a per-window key; the first hit sets the key's expiry."""

    def __init__(
        self,
        redis_client: Any = None,
        *,
        limit: int | None = None,
        window_seconds: int | None = None,
        prefix: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if redis_client is None:
            from redis import asyncio as redis_asyncio

            redis_client = redis_asyncio.from_url(settings.redis_url, decode_responses=True)
        self._redis = redis_client
        self.limit = limit if limit is not None else settings.planner_rate_limit
        self.window_seconds = window_seconds or settings.planner_rate_window_seconds
        self._prefix = f"{prefix if prefix is not None else settings.redis_key_prefix}ratelimit:"
        self._clock = clock

    async def acquire(self, key: str) -> RateLimitDecision:
        window = _window_start(self._clock(), self.window_seconds)
        reset_at = float(window + self.window_seconds)
        bucket_key = f"{self._prefix}{key}:{window}"
        try:
            count = int(await self._redis.incr(bucket_key))
            if count == 1:
                await self._redis.expire(bucket_key, self.window_seconds)
        except Exception as exc:
            # Fail open.
            logger.warning(f"Rate limiter unavailable, allowing request: {exc}")
            return RateLimitDecision(allowed=True, remaining=self.limit, reset_at=reset_at)
        return RateLimitDecision(
            allowed=count <= self.limit,
            remaining=max(self.limit - count, 0),
            reset_at=reset_at,
        )


_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        backend = settings.rate_limit_backend.lower().strip()
        if backend == "redis":
            _limiter = RedisRateLimiter()
        elif backend == "memory":
            _limiter = InMemoryRateLimiter()
        else:
            raise ValueError(f"Unsupported RATE_LIMIT_BACKEND: {settings.rate_limit_backend}")
    return _limiter
