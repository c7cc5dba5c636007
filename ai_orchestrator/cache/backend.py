"""Cache backend implementations.

Defines the CacheBackend ABC and two concrete implementations:
- RedisCacheBackend: Production backend using Redis with JSON serialization
- InMemoryCacheBackend: LRU-bounded dict with lazy TTL expiry, for
  single-process deployments, dev and tests

The factory function get_cache_backend() selects the appropriate backend
based on settings. InMemory is the default so the orchestrator works
without a Redis connection.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class CacheBackend(ABC):
    """Abstract interface all cache backends must implement."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return cached value for key, or None if not found / expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value under key with TTL in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key from cache (no-op if key does not exist)."""

    @abstractmethod
    async def flush_all(self) -> None:
        """Remove ALL keys from the cache. Use with caution."""

    @abstractmethod
    async def info(self) -> dict[str, Any]:
        """Return backend-specific info/stats dict."""


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCacheBackend(CacheBackend):
    """Production cache backend backed by Redis.

    Values are JSON-serialised so they round-trip cleanly without pickle
    security risks. Redis enforces TTL itself (SETEX). The client is created
    lazily on first call so import never blocks.

    Redis errors are logged and degrade to a cache miss: the cache is an
    optimisation, never a reason to fail a request.
    """

    def __init__(self, redis_url: str) -> None:
        self._redis_url = redis_url
        self._client: Any = None  # redis.asyncio.Redis, set on first use

    async def _get_client(self) -> Any:
        """Return or create the Redis client (lazy init)."""
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def get(self, key: str) -> Any | None:
        try:
            client = await self._get_client()
            raw = await client.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as exc:
            log.warning("cache.redis.get_failed", key=key, error=str(exc))
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            client = await self._get_client()
            await client.setex(key, ttl, json.dumps(value, default=str))
        except Exception as exc:
            log.warning("cache.redis.set_failed", key=key, error=str(exc))

    async def delete(self, key: str) -> None:
        try:
            client = await self._get_client()
            await client.delete(key)
        except Exception as exc:
            log.warning("cache.redis.delete_failed", key=key, error=str(exc))

    async def flush_all(self) -> None:
        try:
            client = await self._get_client()
            await client.flushdb()
            log.info("cache.redis.flushed_all")
        except Exception as exc:
            log.warning("cache.redis.flush_all_failed", error=str(exc))

    async def info(self) -> dict[str, Any]:
        try:
            client = await self._get_client()
            redis_info = await client.info()
            dbsize = await client.dbsize()
            return {
                "backend": "redis",
                "connected": True,
                "total_keys": dbsize,
                "hits": redis_info.get("keyspace_hits", 0),
                "misses": redis_info.get("keyspace_misses", 0),
                "used_memory_human": redis_info.get("used_memory_human", "unknown"),
            }
        except Exception as exc:
            return {"backend": "redis", "connected": False, "error": str(exc)}

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class _CacheEntry:
    """Single entry stored by InMemoryCacheBackend."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float) -> None:
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class InMemoryCacheBackend(CacheBackend):
    """Dict-backed cache with lazy TTL expiry and LRU bound.

    Safe under concurrent coroutines via asyncio.Lock. Expired entries are
    only noticed on read; an expired key is a miss and is overwritten by the
    next set(). When max_entries is reached the least recently used entry
    is evicted.

    Args:
        max_entries: Upper bound on stored entries
        clock: Monotonic time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._store: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._max_entries = max_entries
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None or entry.is_expired(self._clock()):
                self._misses += 1
                return None
            self._store.move_to_end(key)
            self._hits += 1
            return entry.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            self._store[key] = _CacheEntry(value, self._clock() + ttl)
            self._store.move_to_end(key)
            while len(self._store) > self._max_entries:
                evicted, _ = self._store.popitem(last=False)
                self._evictions += 1
                log.debug("cache.memory.evicted", key=evicted)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def flush_all(self) -> None:
        async with self._lock:
            self._store.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
        log.info("cache.memory.flushed_all")

    async def info(self) -> dict[str, Any]:
        async with self._lock:
            total_requests = self._hits + self._misses
            hit_rate = self._hits / total_requests if total_requests > 0 else 0.0
            return {
                "backend": "memory",
                "connected": True,
                "total_keys": len(self._store),
                "max_entries": self._max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(hit_rate, 4),
            }


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_cache_backend(settings: Any) -> CacheBackend:
    """Return the appropriate CacheBackend for the given settings.

    Redis when a redis_url is configured, otherwise an LRU-bounded
    in-memory cache sized by cache_max_entries.
    """
    redis_url: str = getattr(settings, "redis_url", "")

    if redis_url:
        log.info("cache.backend_selected", backend="redis", url=redis_url.split("@")[-1])
        return RedisCacheBackend(redis_url)

    max_entries: int = getattr(settings, "cache_max_entries", 10_000)
    log.info("cache.backend_selected", backend="memory", max_entries=max_entries)
    return InMemoryCacheBackend(max_entries=max_entries)
