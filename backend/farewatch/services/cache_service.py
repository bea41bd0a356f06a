"""Cache service — Redis-backed key/value store with an explicit in-memory fallback mode."""

from __future__ import annotations

import fnmatch
import json
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import redis.asyncio as redis

logger = logging.getLogger(__name__)

DEFAULT_TTL = 60 * 60                 # 1 hour
MAX_VALUE_BYTES = 1024 * 1024         # 1 MB per serialized value

MAX_PATTERN_LENGTH = 100
MAX_PATTERN_WILDCARDS = 3
_PATTERN_RE = re.compile(r"^[A-Za-z0-9:_*-]+$")

# Cache modes
MODE_REDIS = "redis"              # durable backend healthy
MODE_MEMORY = "memory"            # configured without Redis
MODE_FALLBACK = "fallback"        # Redis unhealthy, bounded memory store in use
MODE_UNAVAILABLE = "unavailable"  # Redis unhealthy, fallback disabled


def validate_pattern(pattern: str) -> None:
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise ValueError(f"Pattern too long: maximum {MAX_PATTERN_LENGTH} characters")
    if not _PATTERN_RE.match(pattern):
        raise ValueError("Invalid pattern: only alphanumeric, :, _, *, - characters allowed")
    if pattern.count("*") > MAX_PATTERN_WILDCARDS:
        raise ValueError(f"Pattern too complex: maximum {MAX_PATTERN_WILDCARDS} wildcards allowed")


@dataclass
class CacheBatch:
    """Write operations applied together: MULTI/EXEC on Redis, uninterrupted in memory."""

    ops: list[tuple[str, tuple]] = field(default_factory=list)

    def set(self, key: str, value: str, ttl: int | None = None, only_if_exists: bool = False) -> "CacheBatch":
        self.ops.append(("set", (key, value, ttl, only_if_exists)))
        return self

    def delete(self, *keys: str) -> "CacheBatch":
        self.ops.append(("delete", keys))
        return self

    def sadd(self, key: str, *members: str) -> "CacheBatch":
        self.ops.append(("sadd", (key, *members)))
        return self

    def srem(self, key: str, *members: str) -> "CacheBatch":
        self.ops.append(("srem", (key, *members)))
        return self

    def expire(self, key: str, ttl: int) -> "CacheBatch":
        self.ops.append(("expire", (key, ttl)))
        return self

    def zadd(self, key: str, mapping: dict[str, float]) -> "CacheBatch":
        self.ops.append(("zadd", (key, mapping)))
        return self

    def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> "CacheBatch":
        self.ops.append(("zremrangebyscore", (key, min_score, max_score)))
        return self


@dataclass
class _MemoryEntry:
    value: Any                      # str | set[str] | dict[str, float]
    expires_at: float | None = None


class MemoryBackend:
    """Bounded LRU store with per-key expiry. Expired keys are evicted lazily on access."""

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._store: "OrderedDict[str, _MemoryEntry]" = OrderedDict()

    def _live(self, key: str) -> _MemoryEntry | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._store[key]
            return None
        self._store.move_to_end(key)
        return entry

    def _put(self, key: str, value: Any, expires_at: float | None) -> None:
        self._store[key] = _MemoryEntry(value, expires_at)
        self._store.move_to_end(key)
        while len(self._store) > self.max_entries:
            evicted, _ = self._store.popitem(last=False)
            logger.debug(f"Memory cache full, evicted {evicted}")

    def _expiry(self, ttl: int | None) -> float | None:
        return self._clock() + ttl if ttl and ttl > 0 else None

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        entry = self._live(key)
        if entry is None or not isinstance(entry.value, str):
            return None
        return entry.value

    async def set(self, key: str, value: str, ttl: int | None = None, only_if_exists: bool = False) -> bool:
        if only_if_exists and self._live(key) is None:
            return False
        self._put(key, value, self._expiry(ttl))
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._store[key]
                removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def keys(self, pattern: str) -> list[str]:
        return [k for k in list(self._store) if fnmatch.fnmatchcase(k, pattern) and self._live(k)]

    async def expire(self, key: str, ttl: int) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        entry.expires_at = self._expiry(ttl)
        return True

    async def ttl(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return -2
        if entry.expires_at is None:
            return -1
        return max(int(entry.expires_at - self._clock()), 0)

    async def sadd(self, key: str, *members: str) -> int:
        entry = self._live(key)
        if entry is None or not isinstance(entry.value, set):
            entry = _MemoryEntry(set(), entry.expires_at if entry else None)
            self._put(key, entry.value, entry.expires_at)
        before = len(entry.value)
        entry.value.update(members)
        return len(entry.value) - before

    async def srem(self, key: str, *members: str) -> int:
        entry = self._live(key)
        if entry is None or not isinstance(entry.value, set):
            return 0
        before = len(entry.value)
        entry.value.difference_update(members)
        if not entry.value:
            del self._store[key]
        return before - len(entry.value)

    async def smembers(self, key: str) -> set[str]:
        entry = self._live(key)
        if entry is None or not isinstance(entry.value, set):
            return set()
        return set(entry.value)

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        entry = self._live(key)
        if entry is None or not isinstance(entry.value, dict):
            entry = _MemoryEntry({}, entry.expires_at if entry else None)
            self._put(key, entry.value, entry.expires_at)
        added = sum(1 for m in mapping if m not in entry.value)
        entry.value.update(mapping)
        return added

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> list[str]:
        entry = self._live(key)
        if entry is None or not isinstance(entry.value, dict):
            return []
        in_range = [(s, m) for m, s in entry.value.items() if min_score <= s <= max_score]
        return [m for _, m in sorted(in_range)]

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        entry = self._live(key)
        if entry is None or not isinstance(entry.value, dict):
            return 0
        doomed = [m for m, s in entry.value.items() if min_score <= s <= max_score]
        for m in doomed:
            del entry.value[m]
        if not entry.value:
            del self._store[key]
        return len(doomed)

    async def execute_batch(self, batch: CacheBatch) -> list:
        # No awaits suspend inside memory ops, so the batch runs without interleaving.
        return [await getattr(self, name)(*args) for name, args in batch.ops]

    async def size(self) -> int:
        return len([k for k in list(self._store) if self._live(k)])

    async def flush(self) -> None:
        self._store.clear()

    async def close(self) -> None:
        pass


class RedisBackend:
    """Thin async adapter over redis-py with the same surface as ``MemoryBackend``."""

    def __init__(self, url: str, scan_count: int = 500):
        self.url = url
        self._scan_count = scan_count
        self._redis: redis.Redis | None = None

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def ping(self) -> bool:
        return bool(await self._client().ping())

    async def get(self, key: str) -> str | None:
        return await self._client().get(key)

    async def set(self, key: str, value: str, ttl: int | None = None, only_if_exists: bool = False) -> bool:
        ex = ttl if ttl and ttl > 0 else None
        return bool(await self._client().set(key, value, ex=ex, xx=only_if_exists))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._client().delete(*keys)

    async def exists(self, key: str) -> bool:
        return await self._client().exists(key) == 1

    async def keys(self, pattern: str) -> list[str]:
        return [k async for k in self._client().scan_iter(match=pattern, count=self._scan_count)]

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._client().expire(key, ttl))

    async def ttl(self, key: str) -> int:
        return await self._client().ttl(key)

    async def sadd(self, key: str, *members: str) -> int:
        return await self._client().sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return await self._client().srem(key, *members)

    async def smembers(self, key: str) -> set[str]:
        return set(await self._client().smembers(key))

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        return await self._client().zadd(key, mapping)

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> list[str]:
        return await self._client().zrangebyscore(key, min_score, max_score)

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        return await self._client().zremrangebyscore(key, min_score, max_score)

    async def execute_batch(self, batch: CacheBatch) -> list:
        async with self._client().pipeline(transaction=True) as pipe:
            for name, args in batch.ops:
                if name == "set":
                    key, value, ttl, only_if_exists = args
                    pipe.set(key, value, ex=ttl if ttl and ttl > 0 else None, xx=only_if_exists)
                else:
                    getattr(pipe, name)(*args)
            return await pipe.execute()

    async def size(self) -> int:
        return await self._client().dbsize()

    async def flush(self) -> None:
        await self._client().flushdb()

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None


class CacheService:
    """JSON cache over a durable backend with a queryable degraded mode.

    Backend failures never propagate: reads return ``None``/empty, writes
    return ``False``. When the durable backend fails, the service switches to
    the bounded memory fallback (if enabled) until ``health_check`` sees the
    backend recover.
    """

    def __init__(
        self,
        primary: RedisBackend | None = None,
        fallback: MemoryBackend | None = None,
        fallback_enabled: bool = True,
    ):
        self._primary = primary
        self._fallback = fallback if fallback is not None else MemoryBackend()
        self._fallback_enabled = fallback_enabled or primary is None
        self._healthy = True
        self._last_error: str | None = None

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "CacheService":
        primary = RedisBackend(settings.redis_url) if settings.redis_url else None
        fallback = MemoryBackend(settings.cache_fallback_max_entries, clock=clock)
        return cls(primary, fallback, settings.cache_fallback_enabled)

    @property
    def mode(self) -> str:
        if self._primary is None:
            return MODE_MEMORY
        if self._healthy:
            return MODE_REDIS
        return MODE_FALLBACK if self._fallback_enabled else MODE_UNAVAILABLE

    @property
    def is_available(self) -> bool:
        return self.mode != MODE_UNAVAILABLE

    def _backend(self) -> RedisBackend | MemoryBackend | None:
        mode = self.mode
        if mode == MODE_REDIS:
            return self._primary
        if mode in (MODE_MEMORY, MODE_FALLBACK):
            return self._fallback
        return None

    def _mark_unhealthy(self, error: Exception) -> None:
        self._last_error = str(error) or type(error).__name__
        if self._healthy:
            self._healthy = False
            if self._fallback_enabled:
                logger.warning(f"Redis unavailable, switching to in-memory fallback: {error!r}")
            else:
                logger.warning(f"Redis unavailable, cache disabled: {error!r}")

    async def _call(self, op: str, default: Any, *args: Any) -> Any:
        backend = self._backend()
        if backend is None:
            return default
        try:
            return await getattr(backend, op)(*args)
        except Exception as e:
            if backend is not self._primary:
                logger.warning(f"Memory cache {op} failed: {e!r}")
                return default
            self._mark_unhealthy(e)

        backend = self._backend()
        if backend is None:
            return default
        try:
            return await getattr(backend, op)(*args)
        except Exception as e:
            logger.warning(f"Fallback cache {op} failed: {e!r}")
            return default

    async def health_check(self) -> dict:
        """Ping the durable backend and switch modes on failure or recovery."""
        if self._primary is None:
            return {"status": "healthy", "mode": self.mode, "fallback_active": False}

        started = time.monotonic()
        try:
            await self._primary.ping()
        except Exception as e:
            self._mark_unhealthy(e)
            return {
                "status": "unhealthy",
                "mode": self.mode,
                "error": self._last_error,
                "fallback_active": self.mode == MODE_FALLBACK,
            }

        if not self._healthy:
            logger.info("Redis recovered, leaving in-memory fallback")
            self._healthy = True
            self._last_error = None
            await self._fallback.flush()
        return {
            "status": "healthy",
            "mode": self.mode,
            "latency_ms": round((time.monotonic() - started) * 1000, 2),
            "fallback_active": False,
        }

    # Key/value

    async def get(self, key: str) -> Any | None:
        """Get a value from cache. Returns None on miss, expiry or error."""
        raw = await self._call("get", None, key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    async def set(self, key: str, value: Any, ttl: int | None = DEFAULT_TTL) -> bool:
        """Set a value with TTL (seconds). Returns False on error."""
        try:
            raw = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to serialize cache value for {key}: {e}")
            return False
        if len(raw) > MAX_VALUE_BYTES:
            logger.error(f"Cache value for {key} too large ({len(raw)} bytes)")
            return False
        return bool(await self._call("set", False, key, raw, ttl))

    async def delete(self, *keys: str) -> bool:
        return await self._call("delete", 0, *keys) > 0

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", False, key))

    async def keys(self, pattern: str) -> list[str]:
        try:
            validate_pattern(pattern)
        except ValueError as e:
            logger.warning(f"Rejected key pattern {pattern!r}: {e}")
            return []
        return await self._call("keys", [], pattern)

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._call("expire", False, key, ttl))

    async def ttl(self, key: str) -> int:
        return await self._call("ttl", -2, key)

    async def get_or_set(self, key: str, fetcher: Callable[[], Awaitable[Any]], ttl: int | None = DEFAULT_TTL) -> Any:
        """Return the cached value, or compute it with ``fetcher`` and store it."""
        cached = await self.get(key)
        if cached is not None:
            return cached
        fresh = await fetcher()
        await self.set(key, fresh, ttl)
        return fresh

    async def mget(self, keys: list[str]) -> list[Any | None]:
        return [await self.get(k) for k in keys]

    async def mset(self, items: list[tuple[str, Any, int | None]]) -> bool:
        results = [await self.set(key, value, ttl) for key, value, ttl in items]
        return all(results)

    # Sets

    async def sadd(self, key: str, *members: str) -> int:
        return await self._call("sadd", 0, key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return await self._call("srem", 0, key, *members)

    async def smembers(self, key: str) -> set[str]:
        return await self._call("smembers", set(), key)

    # Time series (sorted sets scored by timestamp)

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        return await self._call("zadd", 0, key, mapping)

    async def zrange_by_score(self, key: str, min_score: float, max_score: float) -> list[str]:
        return await self._call("zrangebyscore", [], key, min_score, max_score)

    async def zrem_range_by_score(self, key: str, min_score: float, max_score: float) -> int:
        return await self._call("zremrangebyscore", 0, key, min_score, max_score)

    # Batches

    async def atomic(self, batch: CacheBatch) -> bool:
        """Apply every write in ``batch`` together. Returns False if it could not be applied."""
        return await self.execute(batch) is not None

    async def execute(self, batch: CacheBatch) -> list | None:
        """Apply ``batch`` atomically and return one result per op, or None if it could not be applied."""
        if not batch.ops:
            return []
        return await self._call("execute_batch", None, batch)

    async def get_stats(self) -> dict:
        backend = self._backend()
        size = await self._call("size", 0) if backend is not None else 0
        return {
            "mode": self.mode,
            "keys": size,
            "last_error": self._last_error,
            "fallback_max_entries": self._fallback.max_entries,
        }

    async def close(self):
        if self._primary:
            await self._primary.close()
