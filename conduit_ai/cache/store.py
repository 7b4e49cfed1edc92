"""Key/value store with TTLs used for response caching, rate limiting and usage.

Two backends share one interface: an in-process ``MemoryStore`` and a
``RedisStore``. Values are anything JSON-serializable; counters are plain
integers so ``incr`` works the same way in both backends.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis  # type: ignore[import-untyped]

from ..errors import CacheError
from ..settings import AppSettings

logger = logging.getLogger(__name__)


class CacheStore(ABC):
    """Async key/value store with per-key TTLs (seconds)."""

    backend: str = ""

    def __init__(self):
        self.stats = {"hits": 0, "misses": 0, "errors": 0}

    @abstractmethod
    async def get(self, key: str) -> Any | None: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def incr(
        self, key: str, delta: int = 1, ttl_if_absent: int | None = None
    ) -> int:
        """Atomically add delta and return the new value.

        When the key did not exist, it is created with value ``delta`` and
        expires after ``ttl_if_absent``; an existing key keeps its expiry, so
        a window is never extended.
        """
        ...

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool: ...

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Seconds until the key expires; -1 without an expiry, -2 when missing."""
        ...

    @abstractmethod
    async def mget(self, keys: list[str]) -> list[Any | None]: ...

    @abstractmethod
    async def mset(self, mapping: dict[str, Any], ttl: int | None = None) -> bool: ...

    @abstractmethod
    async def clear(self, pattern: str | None = None) -> int:
        """Delete keys matching a glob pattern (all keys when None)."""
        ...

    async def purge_expired(self) -> int:
        """Drop expired entries. Backends with native expiry have nothing to do."""
        return 0

    @abstractmethod
    async def info(self) -> dict[str, Any]: ...

    @abstractmethod
    async def health_check(self) -> bool: ...

    async def close(self) -> None:
        return None

    def get_stats(self) -> dict[str, Any]:
        """Hit/miss counters for ``get``."""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (
            (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        )
        return {
            "backend": self.backend,
            "hits": self.stats["hits"],
            "misses": self.stats["misses"],
            "errors": self.stats["errors"],
            "hit_rate": f"{hit_rate:.2f}%",
            "total_requests": total_requests,
        }


class MemoryStore(CacheStore):
    """In-process store.

    Entries are kept as ``(expires_at, json_text)`` so readers always get a
    fresh copy. Expiry is lazy on access, plus ``purge_expired`` for sweeping.
    """

    backend = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        super().__init__()
        self._data: dict[str, tuple[float | None, str]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _expires_at(self, ttl: int | None) -> float | None:
        return self._clock() + ttl if ttl else None

    def _live_entry(self, key: str) -> tuple[float | None, str] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[0]
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._live_entry(key)
        if entry is None:
            self.stats["misses"] += 1
            return None
        self.stats["hits"] += 1
        return json.loads(entry[1])

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            data = json.dumps(value)
        except (TypeError, ValueError) as e:
            self.stats["errors"] += 1
            raise CacheError(f"Value for {key} is not serializable: {e}") from e
        async with self._lock:
            self._data[key] = (self._expires_at(ttl), data)
        return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live_entry(key) is not None

    async def incr(
        self, key: str, delta: int = 1, ttl_if_absent: int | None = None
    ) -> int:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                value = delta
                expires_at = self._expires_at(ttl_if_absent)
            else:
                expires_at, data = entry
                current = json.loads(data)
                if not isinstance(current, int):
                    self.stats["errors"] += 1
                    raise CacheError(f"Value for {key} is not an integer")
                value = current + delta
            self._data[key] = (expires_at, json.dumps(value))
            return value

    async def ttl(self, key: str) -> int:
        async with self._lock:
            entry = self._live_entry(key)
        if entry is None:
            return -2
        if entry[0] is None:
            return -1
        return math.ceil(entry[0] - self._clock())

    async def expire(self, key: str, ttl: int) -> bool:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return False
            self._data[key] = (self._expires_at(ttl), entry[1])
            return True

    async def mget(self, keys: list[str]) -> list[Any | None]:
        return [await self.get(key) for key in keys]

    async def mset(self, mapping: dict[str, Any], ttl: int | None = None) -> bool:
        for key, value in mapping.items():
            await self.set(key, value, ttl)
        return True

    async def clear(self, pattern: str | None = None) -> int:
        async with self._lock:
            if pattern is None:
                count = len(self._data)
                self._data.clear()
                return count
            keys = [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]
            for key in keys:
                del self._data[key]
            return len(keys)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [
                key
                for key, (expires_at, _) in self._data.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                del self._data[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    async def info(self) -> dict[str, Any]:
        async with self._lock:
            keys = len(self._data)
        return {**self.get_stats(), "keys": keys}

    async def health_check(self) -> bool:
        return True


class RedisStore(CacheStore):
    """Redis-backed store.

    Best effort: Redis failures are logged and reads degrade to a miss,
    writes to ``False`` and counters to ``0``.
    """

    backend = "redis"

    def __init__(self, client: redis.Redis):
        super().__init__()
        self.client = client

    def _failed(self, operation: str, key: str, error: Exception) -> None:
        self.stats["errors"] += 1
        logger.error(f"Cache {operation} error for {key}: {error}")

    async def get(self, key: str) -> Any | None:
        try:
            data = await self.client.get(key)
        except redis.RedisError as e:
            self._failed("get", key, e)
            return None
        if data is None:
            self.stats["misses"] += 1
            return None
        self.stats["hits"] += 1
        try:
            return json.loads(data)
        except ValueError as e:
            self._failed("decode", key, e)
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            data = json.dumps(value)
        except (TypeError, ValueError) as e:
            self.stats["errors"] += 1
            raise CacheError(f"Value for {key} is not serializable: {e}") from e
        try:
            await self.client.set(key, data, ex=ttl or None)
            return True
        except redis.RedisError as e:
            self._failed("set", key, e)
            return False

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.client.delete(key))
        except redis.RedisError as e:
            self._failed("delete", key, e)
            return False

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except redis.RedisError as e:
            self._failed("exists", key, e)
            return False

    async def incr(
        self, key: str, delta: int = 1, ttl_if_absent: int | None = None
    ) -> int:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                # NX creates the counter with its expiry; INCRBY keeps that expiry
                if ttl_if_absent:
                    pipe.set(key, 0, ex=ttl_if_absent, nx=True)
                pipe.incrby(key, delta)
                results = await pipe.execute()
            return int(results[-1])
        except redis.RedisError as e:
            self._failed("incr", key, e)
            return 0

    async def expire(self, key: str, ttl: int) -> bool:
        try:
            return bool(await self.client.expire(key, ttl))
        except redis.RedisError as e:
            self._failed("expire", key, e)
            return False

    async def ttl(self, key: str) -> int:
        try:
            return int(await self.client.ttl(key))
        except redis.RedisError as e:
            self._failed("ttl", key, e)
            return -2

    async def mget(self, keys: list[str]) -> list[Any | None]:
        if not keys:
            return []
        try:
            values = await self.client.mget(keys)
        except redis.RedisError as e:
            self._failed("mget", ",".join(keys), e)
            return [None] * len(keys)
        results: list[Any | None] = []
        for value in values:
            if value is None:
                self.stats["misses"] += 1
                results.append(None)
            else:
                self.stats["hits"] += 1
                results.append(json.loads(value))
        return results

    async def mset(self, mapping: dict[str, Any], ttl: int | None = None) -> bool:
        if not mapping:
            return True
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for key, value in mapping.items():
                    pipe.set(key, json.dumps(value), ex=ttl or None)
                await pipe.execute()
            return True
        except redis.RedisError as e:
            self._failed("mset", ",".join(mapping), e)
            return False

    async def clear(self, pattern: str | None = None) -> int:
        try:
            keys = [key async for key in self.client.scan_iter(match=pattern or "*")]
            if keys:
                await self.client.delete(*keys)
                logger.info(f"Invalidated {len(keys)} cache entries")
            return len(keys)
        except redis.RedisError as e:
            self._failed("clear", pattern or "*", e)
            return 0

    async def info(self) -> dict[str, Any]:
        info = self.get_stats()
        try:
            info["keys"] = await self.client.dbsize()
            info["connected"] = True
        except redis.RedisError as e:
            logger.error(f"Failed to get Redis info: {e}")
            info["connected"] = False
        return info

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        try:
            await self.client.aclose()
            logger.info("Redis connection closed")
        except redis.RedisError as e:
            logger.error(f"Error closing Redis connection: {e}", exc_info=True)


async def create_cache_store(settings: AppSettings) -> CacheStore:
    """Redis when configured and reachable, the in-process store otherwise."""
    if not settings.redis_url:
        logger.info("Redis not configured, using in-memory cache")
        return MemoryStore()

    client = redis.from_url(
        settings.redis_url,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
        decode_responses=True,
    )
    try:
        await client.ping()
    except (redis.RedisError, OSError) as e:
        logger.warning(f"Redis unavailable ({e}), falling back to in-memory cache")
        await client.aclose()
        return MemoryStore()

    logger.info("Connected to Redis cache")
    return RedisStore(client)
