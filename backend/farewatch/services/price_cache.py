"""Price cache — quote sets, rolling price history, price alerts and persisted jobs."""

import hashlib
import json
import logging
import time
import uuid
from datetime import date, datetime
from typing import Any, Callable

from pydantic import ValidationError

from farewatch.schemas.pricing import MonitoringJob, PriceAlert, PriceHistoryPoint, PriceQuoteSet
from farewatch.services import cache_keys
from farewatch.services.cache_service import CacheBatch, CacheService
from farewatch.services.providers import SearchProvider, lowest_offer, offer_currency, offer_price
from farewatch.services.retry_executor import USER_INITIATED_POLICY, RetryExecutor

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60

# TTLs / windows (seconds unless noted)
TTL_PRICE_QUOTES = 30 * 60
HISTORY_WINDOW_DAYS = 30
TTL_JOBS = 30 * DAY_SECONDS
TTL_ALERTS = 30 * DAY_SECONDS

ALERT_UPDATABLE_FIELDS = {"is_active", "target_price", "current_price", "last_checked_at", "alerts_sent"}


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(k): _normalize(v)
            for k, v in value.items()
            if v is not None and not (isinstance(v, str) and not v.strip())
        }
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def search_hash(search_params: dict[str, Any]) -> str:
    """Deterministic, key-order-independent hash of normalized search params."""
    canonical = json.dumps(_normalize(search_params), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


class PriceCacheManager:
    """Price-specific operations on top of ``CacheService``."""

    def __init__(
        self,
        cache: CacheService,
        clock: Callable[[], float] = time.time,
        quote_ttl: int = TTL_PRICE_QUOTES,
        history_window_days: int = HISTORY_WINDOW_DAYS,
        job_ttl: int = TTL_JOBS,
        alert_ttl: int = TTL_ALERTS,
    ):
        self.cache = cache
        self._clock = clock
        self.quote_ttl = quote_ttl
        self.history_window_days = history_window_days
        self.job_ttl = job_ttl
        self.alert_ttl = alert_ttl

    @classmethod
    def from_settings(cls, cache: CacheService, settings, clock: Callable[[], float] = time.time) -> "PriceCacheManager":
        return cls(
            cache,
            clock=clock,
            quote_ttl=settings.price_cache_ttl_seconds,
            history_window_days=settings.history_window_days,
            job_ttl=settings.job_ttl_days * DAY_SECONDS,
            alert_ttl=settings.alert_ttl_days * DAY_SECONDS,
        )

    @property
    def history_window_seconds(self) -> int:
        return self.history_window_days * DAY_SECONDS

    # Quotes + history

    async def cache_price(
        self,
        kind: str,
        search_params: dict[str, Any],
        offers: list[dict],
        ttl: int | None = None,
        source: str = "scheduler",
    ) -> PriceQuoteSet | None:
        """Store the latest quote set and append one history point for the cheapest offer."""
        search_key = search_hash(search_params)
        now = self._clock()
        ttl = ttl or self.quote_ttl
        quote = PriceQuoteSet(
            search_key=search_key,
            kind=kind,
            offers=offers,
            search_params=search_params,
            cached_at=now,
            expires_at=now + ttl,
        )
        if not await self.cache.set(cache_keys.price_key(kind, search_key), quote.model_dump(), ttl):
            return None

        best = lowest_offer(offers)
        if best is not None:
            point = PriceHistoryPoint(
                search_key=search_key,
                price=offer_price(best),
                currency=offer_currency(best),
                timestamp=now,
                source=source,
            )
            hkey = cache_keys.history_key(kind, search_key)
            batch = (
                CacheBatch()
                .zadd(hkey, {point.model_dump_json(): now})
                .zremrangebyscore(hkey, float("-inf"), now - self.history_window_seconds)
                .expire(hkey, self.history_window_seconds)
            )
            if not await self.cache.atomic(batch):
                logger.warning(f"Price history append failed for {kind}:{search_key}")
        return quote

    async def get_cached_price(self, kind: str, search_params: dict[str, Any]) -> PriceQuoteSet | None:
        key = cache_keys.price_key(kind, search_hash(search_params))
        data = await self.cache.get(key)
        if data is None:
            return None
        try:
            quote = PriceQuoteSet.model_validate(data)
        except ValidationError:
            logger.warning(f"Dropping malformed quote set {key}")
            await self.cache.delete(key)
            return None
        if quote.expires_at <= self._clock():
            await self.cache.delete(key)
            return None
        return quote

    async def get_price_history(
        self, kind: str, search_params: dict[str, Any], days: int = HISTORY_WINDOW_DAYS
    ) -> list[PriceHistoryPoint]:
        """Points within the last ``days`` days, ascending by timestamp."""
        now = self._clock()
        since = now - days * DAY_SECONDS
        raw = await self.cache.zrange_by_score(
            cache_keys.history_key(kind, search_hash(search_params)), since, float("inf")
        )
        points = []
        for item in raw:
            try:
                point = PriceHistoryPoint.model_validate_json(item)
            except ValidationError:
                continue
            if point.timestamp >= since:
                points.append(point)
        points.sort(key=lambda p: p.timestamp)
        return points

    async def get_price_stats(
        self, kind: str, search_params: dict[str, Any], days: int = HISTORY_WINDOW_DAYS
    ) -> dict | None:
        history = await self.get_price_history(kind, search_params, days)
        prices = [p.price for p in history if p.price > 0]
        if not prices:
            return None
        first, last = prices[0], prices[-1]
        if len(prices) < 2 or last == first:
            trend = "stable"
        else:
            trend = "up" if last > first else "down"
        return {
            "lowest": min(prices),
            "highest": max(prices),
            "average": round(sum(prices) / len(prices), 2),
            "current": last,
            "trend": trend,
            "change_percent": round((last - first) / first * 100, 2) if len(prices) > 1 else 0.0,
            "points": len(prices),
        }

    async def search_prices(
        self,
        kind: str,
        search_params: dict[str, Any],
        provider: SearchProvider,
        executor: RetryExecutor,
    ) -> tuple[PriceQuoteSet, bool]:
        """User-initiated lookup: cached quote set if fresh, else fetch and cache.

        Returns ``(quote_set, from_cache)``. Provider failures propagate as
        ``RetryExhausted`` so the caller can report them.
        """
        cached = await self.get_cached_price(kind, search_params)
        if cached is not None:
            return cached, True

        response = await executor.execute(lambda: provider.search(search_params), USER_INITIATED_POLICY)
        offers = response.get("offers", [])
        quote = await self.cache_price(kind, search_params, offers, source="search")
        if quote is None:
            now = self._clock()
            quote = PriceQuoteSet(
                search_key=search_hash(search_params),
                kind=kind,
                offers=offers,
                search_params=search_params,
                cached_at=now,
                expires_at=now,
            )
        return quote, False

    # Alerts

    async def create_alert(
        self, user_id: str, kind: str, search_params: dict[str, Any], target_price: float
    ) -> str | None:
        """Create an alert with its user and active index entries in one batch."""
        alert = PriceAlert(
            id=uuid.uuid4().hex,
            user_id=user_id,
            kind=kind,
            search_params=search_params,
            target_price=target_price,
            created_at=self._clock(),
        )
        ukey = cache_keys.user_alerts_key(user_id)
        batch = (
            CacheBatch()
            .set(cache_keys.alert_key(alert.id), alert.model_dump_json(), self.alert_ttl)
            .sadd(ukey, alert.id)
            .expire(ukey, self.alert_ttl)
            .sadd(cache_keys.ACTIVE_ALERTS_KEY, alert.id)
        )
        if not await self.cache.atomic(batch):
            logger.error(f"Failed to create price alert for user {user_id}")
            return None
        logger.info(f"Created price alert {alert.id} for user {user_id} ({kind}, target {target_price})")
        return alert.id

    async def get_alert(self, alert_id: str) -> PriceAlert | None:
        data = await self.cache.get(cache_keys.alert_key(alert_id))
        if data is None:
            return None
        try:
            return PriceAlert.model_validate(data)
        except ValidationError:
            logger.warning(f"Malformed price alert record {alert_id}")
            return None

    async def get_user_alerts(self, user_id: str) -> list[PriceAlert]:
        ukey = cache_keys.user_alerts_key(user_id)
        alerts = []
        for alert_id in await self.cache.smembers(ukey):
            alert = await self.get_alert(alert_id)
            if alert is None:
                await self.cache.srem(ukey, alert_id)
                continue
            alerts.append(alert)
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return alerts

    async def update_alert(self, alert_id: str, **changes: Any) -> PriceAlert | None:
        unknown = set(changes) - ALERT_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update alert fields: {sorted(unknown)}")

        alert = await self.get_alert(alert_id)
        if alert is None:
            return None
        updated = alert.model_copy(update=changes)

        key = cache_keys.alert_key(alert_id)
        ttl = await self.cache.ttl(key)
        if ttl == -2:
            return None
        batch = CacheBatch().set(
            key, updated.model_dump_json(), ttl if ttl > 0 else self.alert_ttl, only_if_exists=True
        )
        if updated.is_active != alert.is_active:
            if updated.is_active:
                batch.sadd(cache_keys.ACTIVE_ALERTS_KEY, alert_id)
            else:
                batch.srem(cache_keys.ACTIVE_ALERTS_KEY, alert_id)
        results = await self.cache.execute(batch)
        # A delete that landed after the read leaves nothing to overwrite.
        if not results or not results[0]:
            if results and updated.is_active and not alert.is_active:
                await self.cache.srem(cache_keys.ACTIVE_ALERTS_KEY, alert_id)
            return None
        return updated

    async def delete_alert(self, alert_id: str, user_id: str) -> bool:
        alert = await self.get_alert(alert_id)
        if alert is None:
            await self.cache.srem(cache_keys.user_alerts_key(user_id), alert_id)
            await self.cache.srem(cache_keys.ACTIVE_ALERTS_KEY, alert_id)
            return False
        if alert.user_id != user_id:
            logger.warning(f"User {user_id} attempted to delete alert {alert_id} owned by {alert.user_id}")
            return False
        batch = (
            CacheBatch()
            .delete(cache_keys.alert_key(alert_id))
            .srem(cache_keys.user_alerts_key(user_id), alert_id)
            .srem(cache_keys.ACTIVE_ALERTS_KEY, alert_id)
        )
        return await self.cache.atomic(batch)

    async def get_active_alerts(self) -> list[PriceAlert]:
        alerts = []
        for alert_id in sorted(await self.cache.smembers(cache_keys.ACTIVE_ALERTS_KEY)):
            alert = await self.get_alert(alert_id)
            if alert is None or not alert.is_active:
                await self.cache.srem(cache_keys.ACTIVE_ALERTS_KEY, alert_id)
                continue
            alerts.append(alert)
        return alerts

    async def cleanup_orphaned_alerts(self) -> int:
        """Drop index entries whose alert record no longer exists."""
        removed = 0
        index_keys = [cache_keys.ACTIVE_ALERTS_KEY, *await self.cache.keys(cache_keys.USER_ALERTS_PATTERN)]
        for index_key in index_keys:
            for alert_id in await self.cache.smembers(index_key):
                if not await self.cache.exists(cache_keys.alert_key(alert_id)):
                    removed += await self.cache.srem(index_key, alert_id)
        if removed:
            logger.info(f"Removed {removed} orphaned alert index entries")
        return removed

    async def clear_expired(self) -> dict:
        """Prune history beyond the rolling window and sweep orphaned alert index entries."""
        cutoff = self._clock() - self.history_window_seconds
        pruned = 0
        for key in await self.cache.keys(cache_keys.HISTORY_PATTERN):
            pruned += await self.cache.zrem_range_by_score(key, float("-inf"), cutoff)
        orphans = await self.cleanup_orphaned_alerts()
        return {"history_points_removed": pruned, "orphaned_alert_refs": orphans}

    # Jobs

    async def save_job(self, job: MonitoringJob) -> bool:
        return await self.cache.set(cache_keys.job_key(job.id), job.model_dump(), self.job_ttl)

    async def delete_job(self, job_id: str) -> bool:
        return await self.cache.delete(cache_keys.job_key(job_id))

    async def load_jobs(self) -> list[MonitoringJob]:
        jobs = []
        for key in await self.cache.keys(cache_keys.JOB_PATTERN):
            data = await self.cache.get(key)
            if data is None:
                continue
            try:
                jobs.append(MonitoringJob.model_validate(data))
            except ValidationError:
                logger.warning(f"Skipping malformed job record {key}")
        return jobs
