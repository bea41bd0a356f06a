import asyncio

import pytest

from farewatch.services import cache_keys
from farewatch.services.cache_service import CacheService, MemoryBackend
from farewatch.services.price_cache import DAY_SECONDS, PriceCacheManager, search_hash
from farewatch.services.providers import ProviderError
from farewatch.services.retry_executor import RetryExecutor, RetryExhausted

from .conftest import NYC_LAX, FakeProvider, FlakyBackend, make_offers


class YieldingBackend(MemoryBackend):
    """Suspends after reading a TTL so a concurrent writer can run in between."""

    async def ttl(self, key: str) -> int:
        remaining = await super().ttl(key)
        await asyncio.sleep(0)
        return remaining


class TestSearchHash:
    def test_key_order_does_not_matter(self):
        assert search_hash({"a": 1, "b": 2}) == search_hash({"b": 2, "a": 1})

    def test_blank_and_missing_values_normalize_away(self):
        assert search_hash({"origin": " NYC ", "return_date": None, "cabin": ""}) == search_hash({"origin": "NYC"})

    def test_different_searches_differ(self):
        assert search_hash(NYC_LAX) != search_hash({**NYC_LAX, "destination": "SFO"})


class TestQuotes:
    async def test_cache_price_hits_for_reordered_params(self, price_cache):
        reordered = dict(reversed(list(NYC_LAX.items())))

        quote = await price_cache.cache_price("flight", NYC_LAX, make_offers(420.0, 300.0))
        cached = await price_cache.get_cached_price("flight", reordered)

        assert cached is not None
        assert cached.search_key == quote.search_key
        assert len(cached.offers) == 2
        history = await price_cache.get_price_history("flight", reordered, days=30)
        assert [p.price for p in history] == [300.0]
        assert history[0].currency == "USD"

    async def test_expired_quote_is_absent(self, price_cache, clock):
        await price_cache.cache_price("flight", NYC_LAX, make_offers(300.0), ttl=60)
        clock.advance(61)
        assert await price_cache.get_cached_price("flight", NYC_LAX) is None

    async def test_malformed_quote_is_dropped(self, price_cache, cache):
        key = cache_keys.price_key("flight", search_hash(NYC_LAX))
        await cache.set(key, {"unexpected": True})

        assert await price_cache.get_cached_price("flight", NYC_LAX) is None
        assert not await cache.exists(key)

    async def test_unpriced_offers_add_no_history(self, price_cache):
        await price_cache.cache_price("flight", NYC_LAX, [{"id": "x", "price": {}}])
        assert await price_cache.get_price_history("flight", NYC_LAX) == []


class TestHistory:
    async def test_history_respects_window_and_is_ascending(self, price_cache, clock):
        await price_cache.cache_price("flight", NYC_LAX, make_offers(500.0))
        clock.advance(20 * DAY_SECONDS)
        await price_cache.cache_price("flight", NYC_LAX, make_offers(400.0))
        clock.advance(15 * DAY_SECONDS)
        await price_cache.cache_price("flight", NYC_LAX, make_offers(300.0))

        month = await price_cache.get_price_history("flight", NYC_LAX, days=30)
        week = await price_cache.get_price_history("flight", NYC_LAX, days=7)

        assert [p.price for p in month] == [400.0, 300.0]
        assert [p.timestamp for p in month] == sorted(p.timestamp for p in month)
        assert all(p.timestamp >= clock.now - 30 * DAY_SECONDS for p in month)
        assert [p.price for p in week] == [300.0]

    async def test_price_stats(self, price_cache, clock):
        for price in (400.0, 360.0, 300.0):
            await price_cache.cache_price("flight", NYC_LAX, make_offers(price))
            clock.advance(3600)

        stats = await price_cache.get_price_stats("flight", NYC_LAX)

        assert stats["lowest"] == 300.0
        assert stats["highest"] == 400.0
        assert stats["current"] == 300.0
        assert stats["trend"] == "down"
        assert stats["change_percent"] == -25.0
        assert stats["points"] == 3

    async def test_stats_absent_without_history(self, price_cache):
        assert await price_cache.get_price_stats("flight", NYC_LAX) is None

    async def test_clear_expired_prunes_old_points(self, price_cache, cache, clock):
        await price_cache.cache_price("flight", NYC_LAX, make_offers(500.0))
        clock.advance(31 * DAY_SECONDS)
        # Simulate a series written before its TTL was refreshed
        key = cache_keys.history_key("flight", search_hash(NYC_LAX))
        await cache.zadd(key, {"stale": clock.now - 40 * DAY_SECONDS, "fresh": clock.now})

        summary = await price_cache.clear_expired()

        assert summary["history_points_removed"] == 1
        assert await cache.zrange_by_score(key, float("-inf"), float("inf")) == ["fresh"]


class TestSearchPrices:
    async def test_second_lookup_served_from_cache(self, price_cache):
        provider = FakeProvider(make_offers(310.0, 290.0))
        executor = RetryExecutor("lookup")

        first, first_cached = await price_cache.search_prices("flight", NYC_LAX, provider, executor)
        second, second_cached = await price_cache.search_prices("flight", NYC_LAX, provider, executor)

        assert (first_cached, second_cached) == (False, True)
        assert second.search_key == first.search_key
        assert len(provider.calls) == 1

    async def test_permanent_provider_error_propagates(self, price_cache):
        provider = FakeProvider(ProviderError("bad request", status_code=400))

        with pytest.raises(RetryExhausted):
            await price_cache.search_prices("flight", NYC_LAX, provider, RetryExecutor("lookup"))
        assert len(provider.calls) == 1


class TestAlerts:
    async def test_create_indexes_alert(self, price_cache, cache):
        alert_id = await price_cache.create_alert("user1", "flight", NYC_LAX, 250.0)

        assert alert_id
        assert await cache.smembers(cache_keys.user_alerts_key("user1")) == {alert_id}
        assert alert_id in await cache.smembers(cache_keys.ACTIVE_ALERTS_KEY)
        [alert] = await price_cache.get_user_alerts("user1")
        assert alert.target_price == 250.0
        assert alert.is_active
        assert alert.alerts_sent == 0

    async def test_user_alerts_newest_first(self, price_cache, clock):
        older = await price_cache.create_alert("user1", "flight", NYC_LAX, 250.0)
        clock.advance(10)
        newer = await price_cache.create_alert("user1", "flight", NYC_LAX, 200.0)

        assert [a.id for a in await price_cache.get_user_alerts("user1")] == [newer, older]
        assert await price_cache.get_user_alerts("someone-else") == []

    async def test_deactivating_removes_from_active_index(self, price_cache):
        alert_id = await price_cache.create_alert("user1", "flight", NYC_LAX, 250.0)

        updated = await price_cache.update_alert(alert_id, is_active=False)

        assert updated.is_active is False
        assert await price_cache.get_active_alerts() == []
        assert len(await price_cache.get_user_alerts("user1")) == 1

        await price_cache.update_alert(alert_id, is_active=True, target_price=225.0)
        [active] = await price_cache.get_active_alerts()
        assert active.target_price == 225.0

    async def test_update_keeps_remaining_ttl(self, price_cache, cache, clock):
        alert_id = await price_cache.create_alert("user1", "flight", NYC_LAX, 250.0)
        clock.advance(DAY_SECONDS)

        await price_cache.update_alert(alert_id, current_price=260.0)

        assert await cache.ttl(cache_keys.alert_key(alert_id)) == price_cache.alert_ttl - DAY_SECONDS

    async def test_update_rejects_unknown_fields(self, price_cache):
        alert_id = await price_cache.create_alert("user1", "flight", NYC_LAX, 250.0)
        with pytest.raises(ValueError):
            await price_cache.update_alert(alert_id, user_id="user2")

    async def test_update_missing_alert(self, price_cache):
        assert await price_cache.update_alert("nope", is_active=False) is None

    async def test_update_does_not_recreate_alert_deleted_mid_update(self, clock):
        price_cache = PriceCacheManager(CacheService(primary=None, fallback=YieldingBackend(clock=clock)), clock=clock)
        alert_id = await price_cache.create_alert("user1", "flight", NYC_LAX, 250.0)

        updated, deleted = await asyncio.gather(
            price_cache.update_alert(alert_id, current_price=240.0),
            price_cache.delete_alert(alert_id, "user1"),
        )

        assert deleted
        assert updated is None
        assert await price_cache.get_alert(alert_id) is None
        assert await price_cache.get_active_alerts() == []

    async def test_reactivating_deleted_alert_leaves_no_index_entry(self, clock):
        price_cache = PriceCacheManager(CacheService(primary=None, fallback=YieldingBackend(clock=clock)), clock=clock)
        alert_id = await price_cache.create_alert("user1", "flight", NYC_LAX, 250.0)
        await price_cache.update_alert(alert_id, is_active=False)

        updated, _ = await asyncio.gather(
            price_cache.update_alert(alert_id, is_active=True),
            price_cache.delete_alert(alert_id, "user1"),
        )

        assert updated is None
        assert await price_cache.cache.smembers(cache_keys.ACTIVE_ALERTS_KEY) == set()

    async def test_delete_checks_owner(self, price_cache, cache):
        alert_id = await price_cache.create_alert("user1", "flight", NYC_LAX, 250.0)

        assert not await price_cache.delete_alert(alert_id, "user2")
        assert await price_cache.get_alert(alert_id) is not None

        assert await price_cache.delete_alert(alert_id, "user1")
        assert await price_cache.get_alert(alert_id) is None
        assert await cache.smembers(cache_keys.ACTIVE_ALERTS_KEY) == set()
        assert await price_cache.get_user_alerts("user1") == []

    async def test_orphaned_index_entries_are_swept(self, price_cache, cache):
        alert_id = await price_cache.create_alert("user1", "flight", NYC_LAX, 250.0)
        await cache.delete(cache_keys.alert_key(alert_id))

        assert await price_cache.cleanup_orphaned_alerts() == 2
        assert await cache.smembers(cache_keys.ACTIVE_ALERTS_KEY) == set()
        assert await cache.smembers(cache_keys.user_alerts_key("user1")) == set()

    async def test_create_fails_cleanly_when_cache_unavailable(self, clock):
        cache = CacheService(FlakyBackend(clock), MemoryBackend(clock=clock), fallback_enabled=False)
        price_cache = PriceCacheManager(cache, clock=clock)

        assert await price_cache.create_alert("user1", "flight", NYC_LAX, 250.0) is None
        assert await price_cache.get_user_alerts("user1") == []
        assert await price_cache.get_cached_price("flight", NYC_LAX) is None


class TestJobs:
    async def test_save_load_delete(self, price_cache, scheduler):
        job_id = await scheduler.add_job("flight", NYC_LAX, "high")

        [loaded] = await price_cache.load_jobs()
        assert loaded.id == job_id
        assert loaded.priority_tier == "high"

        assert await price_cache.delete_job(job_id)
        assert await price_cache.load_jobs() == []
