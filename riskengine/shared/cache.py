"""Get-or-compute cache with TTL.

Services receive a ``Cache`` at construction and wrap their I/O-bound lookups
(velocity counts, rule lists, IP data) in ``get_or_compute``. Cached values
must be JSON-compatible so the Redis backend can hold them.
"""

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()

Loader = Callable[[], Awaitable[Any]]


class Cache(Protocol):
    async def get_or_compute(self, key: str, ttl_seconds: int, fn: Loader) -> Any: ...

    async def forget(self, key: str) -> None: ...


class MemoryCache:
    """In-process TTL cache. ``clock`` is injectable for tests.

    Expired entries are dropped when read and swept on every write, so keys
    that are never requested again do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    async def get_or_compute(self, key: str, ttl_seconds: int, fn: Loader) -> Any:
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None:
            if entry[0] > now:
                return entry[1]
            del self._entries[key]

        value = await fn()
        self._evict_expired(now)
        self._entries[key] = (now + ttl_seconds, value)
        return value

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for k in expired:
            del self._entries[k]

    async def forget(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class RedisCache:
    """Redis-backed cache storing JSON values under a key prefix.

    Redis failures degrade to computing the value directly.
    """

    def __init__(self, client: aioredis.Redis, prefix: str = "riskengine:") -> None:
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "riskengine:") -> "RedisCache":
        return cls(aioredis.from_url(url, decode_responses=True), prefix=prefix)

    async def get_or_compute(self, key: str, ttl_seconds: int, fn: Loader) -> Any:
        full_key = f"{self._prefix}{key}"
        try:
            raw = await self._redis.get(full_key)
        except RedisError:
            logger.warning("cache_read_failed", key=full_key, exc_info=True)
            return await fn()

        if raw is not None:
            return json.loads(raw)

        value = await fn()
        try:
            await self._redis.set(full_key, json.dumps(value, default=str), ex=ttl_seconds)
        except RedisError:
            logger.warning("cache_write_failed", key=full_key, exc_info=True)
        return value

    async def forget(self, key: str) -> None:
        try:
            await self._redis.delete(f"{self._prefix}{key}")
        except RedisError:
            logger.warning("cache_delete_failed", key=key, exc_info=True)

    async def close(self) -> None:
        await self._redis.aclose()


def create_cache(backend: str, redis_url: str, prefix: str = "riskengine:") -> Cache:
    """Build the configured cache backend ("redis" or "memory")."""
    if backend == "redis":
        logger.info("cache_backend_selected", backend="redis")
        return RedisCache.from_url(redis_url, prefix=prefix)
    logger.info("cache_backend_selected", backend="memory")
    return MemoryCache()
