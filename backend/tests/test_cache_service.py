import pytest

from farewatch.services.cache_service import (
    MODE_FALLBACK,
    MODE_MEMORY,
    MODE_REDIS,
    MODE_UNAVAILABLE,
    CacheBatch,
    CacheService,
    MemoryBackend,
    validate_pattern,
)

from .conftest import FlakyBackend


class TestKeyValue:
    async def test_entry_expires_after_ttl(self, cache, clock):
        assert await cache.set("price:flight:abc", {"total": 300}, ttl=1)
        assert await cache.get("price:flight:abc") == {"total": 300}

        clock.advance(1.1)

        assert await cache.get("price:flight:abc") is None
        assert not await cache.exists("price:flight:abc")

    async def test_delete_and_ttl(self, cache, clock):
        await cache.set("a", 1, ttl=60)
        assert await cache.ttl("a") == 60
        assert await cache.ttl("missing") == -2
        assert await cache.delete("a")
        assert not await cache.delete("a")

    async def test_expire_extends_lifetime(self, cache, clock):
        await cache.set("a", 1, ttl=1)
        assert await cache.expire("a", 10)
        clock.advance(5)
        assert await cache.get("a") == 1

    async def test_get_or_set_calls_fetcher_once(self, cache):
        calls = []

        async def fetch():
            calls.append(1)
            return {"offers": [1, 2]}

        first = await cache.get_or_set("k", fetch, ttl=60)
        second = await cache.get_or_set("k", fetch, ttl=60)

        assert first == second == {"offers": [1, 2]}
        assert len(calls) == 1

    async def test_mset_and_mget(self, cache):
        assert await cache.mset([("a", 1, 60), ("b", {"x": 2}, None)])
        assert await cache.mget(["a", "b", "c"]) == [1, {"x": 2}, None]

    async def test_oversized_value_is_rejected(self, cache):
        assert not await cache.set("big", "x" * (1024 * 1024 + 1))
        assert await cache.get("big") is None


class TestPatterns:
    async def test_keys_matches_pattern(self, cache):
        await cache.set("alert:1", {})
        await cache.set("alert:2", {})
        await cache.set("price:flight:1", {})

        assert sorted(await cache.keys("alert:*")) == ["alert:1", "alert:2"]

    @pytest.mark.parametrize(
        "pattern",
        ["alert:*; FLUSHALL", "a*b*c*d*", "x" * 101, "alert:[0-9]"],
    )
    async def test_invalid_patterns_return_nothing(self, cache, pattern):
        await cache.set("alert:1", {})
        assert await cache.keys(pattern) == []

    def test_validate_pattern_raises(self):
        validate_pattern("history:flight:*")
        with pytest.raises(ValueError, match="too complex"):
            validate_pattern("*:*:*:*")


class TestMemoryBackend:
    async def test_lru_eviction_is_bounded(self, clock):
        backend = MemoryBackend(max_entries=2, clock=clock)
        await backend.set("a", "1")
        await backend.set("b", "2")
        await backend.get("a")
        await backend.set("c", "3")

        assert await backend.get("b") is None
        assert await backend.get("a") == "1"
        assert await backend.size() == 2

    async def test_sorted_set_range_is_ordered_by_score(self, clock):
        backend = MemoryBackend(clock=clock)
        await backend.zadd("h", {"late": 30.0, "early": 10.0, "mid": 20.0})

        assert await backend.zrangebyscore("h", 15, 40) == ["mid", "late"]
        assert await backend.zremrangebyscore("h", float("-inf"), 20) == 2
        assert await backend.zrangebyscore("h", float("-inf"), float("inf")) == ["late"]

    async def test_batch_applies_every_op(self, cache):
        batch = CacheBatch().set("alert:1", '{"id": "1"}', 60).sadd("user_alerts:u1", "1").sadd("active_alerts", "1")

        assert await cache.atomic(batch)
        assert await cache.get("alert:1") == {"id": "1"}
        assert await cache.smembers("user_alerts:u1") == {"1"}
        assert await cache.smembers("active_alerts") == {"1"}

    async def test_batch_set_only_if_exists_skips_missing_key(self, cache):
        results = await cache.execute(CacheBatch().set("alert:gone", '{"id": "gone"}', 60, only_if_exists=True))

        assert results == [False]
        assert not await cache.exists("alert:gone")

        await cache.set("alert:2", {"id": "2"}, 60)
        assert await cache.execute(CacheBatch().set("alert:2", '{"id": "2b"}', 60, only_if_exists=True)) == [True]
        assert await cache.get("alert:2") == {"id": "2b"}


class TestModes:
    async def test_memory_only_mode(self, cache):
        assert cache.mode == MODE_MEMORY
        assert (await cache.health_check())["status"] == "healthy"

    async def test_backend_failure_switches_to_fallback_and_recovers(self, clock):
        primary = FlakyBackend(clock, down=False)
        cache = CacheService(primary, MemoryBackend(clock=clock), fallback_enabled=True)
        await cache.set("durable", 1)
        assert cache.mode == MODE_REDIS

        primary.down = True
        assert await cache.set("k", {"v": 1})
        assert cache.mode == MODE_FALLBACK
        assert await cache.get("k") == {"v": 1}
        assert (await cache.health_check())["fallback_active"] is True

        primary.down = False
        health = await cache.health_check()

        assert health["status"] == "healthy"
        assert cache.mode == MODE_REDIS
        assert await cache.get("k") is None
        assert await cache.get("durable") == 1

    async def test_failure_without_fallback_degrades_quietly(self, clock):
        cache = CacheService(FlakyBackend(clock), MemoryBackend(clock=clock), fallback_enabled=False)

        assert not await cache.set("k", 1)
        assert cache.mode == MODE_UNAVAILABLE
        assert not cache.is_available
        assert await cache.get("k") is None
        assert await cache.keys("k*") == []
        assert await cache.smembers("s") == set()
        assert not await cache.atomic(CacheBatch().sadd("s", "1"))

    async def test_stats_report_mode(self, cache):
        await cache.set("a", 1)
        stats = await cache.get_stats()
        assert stats["mode"] == MODE_MEMORY
        assert stats["keys"] == 1
