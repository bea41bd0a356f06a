"""Price scheduler — tiered refresh of monitored searches, alert sweeps and cleanup.

Job lifecycle::

    PENDING (active, due) -> RUNNING -> SUCCEEDED -> PENDING (next tier interval)
                                     -> FAILED    -> PENDING (tier interval + 2^n minutes)
                                     -> FAILED x max_failures -> INACTIVE (purged by cleanup)

Each tier fires on its own APScheduler interval job, so a slow tier never
stalls the others. Within a tick, due jobs run concurrently, capped by
``max_concurrent`` across all tiers.
"""

import asyncio
import logging
import random
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from farewatch.schemas.pricing import TIER_RANK, MonitoringJob, PriceAlert, PriceChange
from farewatch.services.price_cache import PriceCacheManager
from farewatch.services.providers import KIND_EMPTY, NotificationSink, ProviderError, SearchProvider, lowest_price
from farewatch.services.retry_executor import (
    NETWORK_POLICY,
    CancellationToken,
    Cancelled,
    RetryExecutor,
    RetryPolicy,
    Success,
)

logger = logging.getLogger(__name__)

DEFAULT_TIER_INTERVALS = {
    "high": timedelta(minutes=15),
    "medium": timedelta(hours=1),
    "low": timedelta(hours=6),
}
MAX_CONCURRENT_UPDATES = 5
MAX_FAILURES = 3
TIER_JITTER = 0.1                          # ±10% of the tier interval
FAILURE_BACKOFF_UNIT = 60                  # seconds; backoff is 2^failures units
ALERT_RECHECK = timedelta(hours=1)
ALERT_SWEEP_INTERVAL = timedelta(days=1)
CLEANUP_INTERVAL = timedelta(days=1)
CACHE_HEALTH_INTERVAL = timedelta(minutes=1)


class InvariantViolation(Exception):
    """Scheduler state is inconsistent; aborts the current tick."""


class AlertCheckFailed(Exception):
    pass


@dataclass
class JobRunResult:
    job_id: str
    success: bool
    price_change: PriceChange | None = None
    error: str | None = None
    cancelled: bool = False
    execution_time: float = 0.0


class PriceScheduler:
    """Owns monitoring jobs and drives refreshes, alert evaluation and cleanup."""

    def __init__(
        self,
        price_cache: PriceCacheManager,
        providers: dict[str, SearchProvider],
        notifier: NotificationSink,
        executor: RetryExecutor | None = None,
        retry_policy: RetryPolicy = NETWORK_POLICY,
        tier_intervals: dict[str, timedelta] | None = None,
        max_concurrent: int = MAX_CONCURRENT_UPDATES,
        max_failures: int = MAX_FAILURES,
        alert_recheck: timedelta = ALERT_RECHECK,
        alert_sweep_interval: timedelta = ALERT_SWEEP_INTERVAL,
        cleanup_interval: timedelta = CLEANUP_INTERVAL,
        cache_health_interval: timedelta = CACHE_HEALTH_INTERVAL,
        alert_check_delay: float = 1.0,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ):
        self.price_cache = price_cache
        self.providers = providers
        self.notifier = notifier
        self.executor = executor or RetryExecutor("price refresh")
        self.retry_policy = retry_policy
        self.tier_intervals = tier_intervals or dict(DEFAULT_TIER_INTERVALS)
        self.max_concurrent = max_concurrent
        self.max_failures = max_failures
        self.alert_recheck = alert_recheck
        self.alert_sweep_interval = alert_sweep_interval
        self.cleanup_interval = cleanup_interval
        self.cache_health_interval = cache_health_interval
        self.alert_check_delay = alert_check_delay
        self._clock = clock
        self._rng = rng or random.Random()

        self._jobs: dict[str, MonitoringJob] = {}
        self._running: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._slot_freed = asyncio.Event()
        self._cancel_token = CancellationToken()
        self._scheduler: AsyncIOScheduler | None = None
        self._initial_run: asyncio.Task | None = None
        self._stopped = False
        self.is_running = False

    @classmethod
    def from_settings(
        cls,
        settings,
        price_cache: PriceCacheManager,
        providers: dict[str, SearchProvider],
        notifier: NotificationSink,
        **kwargs: Any,
    ) -> "PriceScheduler":
        return cls(
            price_cache,
            providers,
            notifier,
            tier_intervals=settings.tier_intervals,
            max_concurrent=settings.max_concurrent_updates,
            max_failures=settings.max_job_failures,
            alert_recheck=timedelta(minutes=settings.alert_recheck_minutes),
            alert_sweep_interval=timedelta(hours=settings.alert_check_interval_hours),
            cleanup_interval=timedelta(hours=settings.cleanup_interval_hours),
            cache_health_interval=timedelta(seconds=settings.cache_health_check_seconds),
            alert_check_delay=settings.alert_check_delay_seconds,
            **kwargs,
        )

    # Lifecycle

    async def start(self, run_initial: bool = True) -> None:
        if self.is_running:
            logger.info("Price scheduler is already running")
            return

        logger.info("Starting price scheduler...")
        self._stopped = False
        self._cancel_token = CancellationToken()
        if not self._jobs:
            await self._load_jobs()

        self._scheduler = AsyncIOScheduler()
        for tier, interval in self.tier_intervals.items():
            self._add_interval_job(self.run_tick, interval, f"tier_{tier}", args=[tier], max_instances=3)
        self._add_interval_job(self.evaluate_alerts, self.alert_sweep_interval, "price_alerts")
        self._add_interval_job(self.cleanup, self.cleanup_interval, "cleanup")
        self._add_interval_job(self.check_cache_health, self.cache_health_interval, "cache_health")
        self._scheduler.start()
        self.is_running = True

        if run_initial:
            self._initial_run = asyncio.create_task(self.run_all_due())
        logger.info(f"Price scheduler started with {len(self._jobs)} jobs")

    def _add_interval_job(self, func, interval: timedelta, job_id: str, args=None, max_instances: int = 1):
        self._scheduler.add_job(
            func,
            IntervalTrigger(seconds=interval.total_seconds()),
            args=args or [],
            id=job_id,
            max_instances=max_instances,
            coalesce=True,
            misfire_grace_time=None,  # late ticks still run
        )

    async def stop(self, graceful: bool = True) -> None:
        """Stop scheduling. Graceful stop waits for in-flight work; otherwise retries are cancelled first."""
        if self._stopped:
            return
        logger.info("Stopping price scheduler...")
        self._stopped = True
        self.is_running = False
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if not graceful:
            self._cancel_token.cancel()
        self._slot_freed.set()

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        if pending:
            logger.info(f"Waiting for {len(pending)} in-flight scheduler tasks")
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Price scheduler stopped")

    @asynccontextmanager
    async def _tracked(self):
        task = asyncio.current_task()
        self._tasks.add(task)
        try:
            yield
        finally:
            self._tasks.discard(task)

    # Jobs

    async def add_job(
        self,
        kind: str,
        search_params: dict[str, Any],
        priority_tier: str,
        owner_user_id: str | None = None,
    ) -> str:
        if priority_tier not in self.tier_intervals:
            raise ValueError(f"Unknown priority tier: {priority_tier}")
        if kind not in self.providers:
            raise ValueError(f"No provider for kind: {kind}")

        now = self._clock()
        job = MonitoringJob(
            id=f"{kind}_{int(now * 1000)}_{uuid.uuid4().hex[:9]}",
            kind=kind,
            search_params=search_params,
            priority_tier=priority_tier,
            owner_user_id=owner_user_id,
            next_due_at=now,
        )
        self._jobs[job.id] = job
        await self.price_cache.save_job(job)
        logger.info(f"Added price update job: {job.id} ({kind}, {priority_tier})")
        return job.id

    async def remove_job(self, job_id: str) -> bool:
        existed = self._jobs.pop(job_id, None) is not None
        await self.price_cache.delete_job(job_id)
        if existed:
            logger.info(f"Removed price update job: {job_id}")
        return existed

    def get_job(self, job_id: str) -> MonitoringJob | None:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[MonitoringJob]:
        return list(self._jobs.values())

    async def _load_jobs(self) -> None:
        for job in await self.price_cache.load_jobs():
            if not job.is_active:
                continue
            if job.consecutive_failures >= self.max_failures:
                logger.warning(
                    f"Deactivating job {job.id} on load: {job.consecutive_failures} consecutive failures"
                )
                job.is_active = False
                await self.price_cache.save_job(job)
            self._jobs[job.id] = job
        logger.info(f"Loaded {len(self._jobs)} price update jobs from cache")

    async def _persist(self, job: MonitoringJob) -> None:
        # A job removed while running must not be written back.
        if job.id in self._jobs:
            await self.price_cache.save_job(job)

    # Ticks

    def select_due_jobs(self, tier: str | None = None, exclude: set[str] | frozenset = frozenset()) -> list[MonitoringJob]:
        """Active, due, not-running jobs ordered by (tier, due time, id), up to free capacity."""
        capacity = self.max_concurrent - len(self._running)
        if capacity <= 0:
            return []
        return self._due_jobs(tier, exclude)[:capacity]

    def _due_jobs(self, tier: str | None, exclude: set[str] | frozenset) -> list[MonitoringJob]:
        now = self._clock()
        due = [
            job for job in self._jobs.values()
            if job.is_active
            and job.next_due_at <= now
            and job.id not in self._running
            and job.id not in exclude
            and (tier is None or job.priority_tier == tier)
        ]
        due.sort(key=lambda j: (TIER_RANK[j.priority_tier], j.next_due_at, j.id))
        return due

    async def run_tick(self, tier: str | None = None) -> list[JobRunResult]:
        """Run due jobs for ``tier`` (all tiers if None) until none are left.

        When every slot is held by other ticks, waits for one to free up rather than skipping.
        """
        if self._stopped:
            return []

        results: list[JobRunResult] = []
        attempted: set[str] = set()
        async with self._tracked():
            while not self._stopped:
                batch = self.select_due_jobs(tier, exclude=attempted)
                if not batch:
                    if not self._due_jobs(tier, attempted):
                        break
                    self._slot_freed.clear()
                    await self._slot_freed.wait()
                    continue
                for job in batch:
                    self._check_invariants(job)
                for job in batch:
                    self._running.add(job.id)
                    attempted.add(job.id)
                results.extend(await asyncio.gather(*(self._run_job(job) for job in batch)))

        if results:
            ok = sum(1 for r in results if r.success)
            logger.info(f"Tick {tier or 'all'}: {ok}/{len(results)} jobs refreshed")
        return results

    async def run_all_due(self) -> list[JobRunResult]:
        if not self._jobs:
            await self._load_jobs()
        return await self.run_tick(None)

    def _check_invariants(self, job: MonitoringJob) -> None:
        if job.id in self._running:
            message = f"job {job.id} selected while already running"
        elif job.consecutive_failures >= self.max_failures:
            message = f"job {job.id} is active with {job.consecutive_failures} consecutive failures"
        else:
            return
        logger.error(f"Invariant violation: {message}; job={job.model_dump()} running={sorted(self._running)}")
        raise InvariantViolation(message)

    async def _run_job(self, job: MonitoringJob) -> JobRunResult:
        started = time.monotonic()
        try:
            async with self._semaphore:
                return await self._refresh(job, started)
        except Exception as e:
            logger.exception(f"Unexpected error refreshing job {job.id}")
            return await self._record_failure(job, e, started)
        finally:
            self._running.discard(job.id)
            self._slot_freed.set()

    async def _refresh(self, job: MonitoringJob, started: float) -> JobRunResult:
        logger.info(f"Processing price update job: {job.id} ({job.kind})")
        provider = self.providers[job.kind]

        previous = await self.price_cache.get_cached_price(job.kind, job.search_params)
        old_price = lowest_price(previous.offers) if previous else 0.0

        async def fetch() -> list[dict]:
            response = await provider.search(job.search_params)
            offers = response.get("offers", [])
            if not offers:
                raise ProviderError("No price data received", kind=KIND_EMPTY)
            return offers

        result = await self.executor.run(fetch, self.retry_policy, self._cancel_token)
        if isinstance(result, Cancelled):
            logger.info(f"Price update for {job.id} cancelled; job stays pending")
            return JobRunResult(job.id, False, error="cancelled", cancelled=True,
                                execution_time=time.monotonic() - started)
        if not isinstance(result, Success):
            return await self._record_failure(job, result.error, started)

        offers = result.value
        await self.price_cache.cache_price(job.kind, job.search_params, offers, source="scheduler")

        new_price = lowest_price(offers)
        price_change = None
        if old_price > 0:
            price_change = PriceChange(
                old_price=old_price,
                new_price=new_price,
                percent_change=round((new_price - old_price) / old_price * 100, 2),
            )

        now = self._clock()
        job.last_run_at = now
        job.consecutive_failures = 0
        job.next_due_at = self._next_due(job, now)
        await self._persist(job)

        execution_time = time.monotonic() - started
        logger.info(f"Price update completed for {job.id} in {execution_time * 1000:.0f}ms (lowest {new_price:.2f})")
        return JobRunResult(job.id, True, price_change=price_change, execution_time=execution_time)

    def _next_due(self, job: MonitoringJob, now: float) -> float:
        interval = self.tier_intervals[job.priority_tier].total_seconds()
        return now + interval + self._rng.uniform(-TIER_JITTER, TIER_JITTER) * interval

    async def _record_failure(self, job: MonitoringJob, error: BaseException | None, started: float) -> JobRunResult:
        now = self._clock()
        job.consecutive_failures += 1
        job.last_run_at = now
        if job.consecutive_failures >= self.max_failures:
            job.is_active = False
            logger.warning(f"Deactivating job {job.id} after {job.consecutive_failures} consecutive failures")
        else:
            interval = self.tier_intervals[job.priority_tier].total_seconds()
            job.next_due_at = now + interval + 2 ** job.consecutive_failures * FAILURE_BACKOFF_UNIT
            logger.warning(
                f"Price update failed for job {job.id} "
                f"({job.consecutive_failures}/{self.max_failures}): {error!r}"
            )
        await self._persist(job)
        return JobRunResult(
            job.id,
            False,
            error=str(error) if error else "unknown error",
            execution_time=time.monotonic() - started,
        )

    # Alerts

    async def evaluate_alerts(self) -> dict:
        """Check every active alert; each alert's failure is isolated from the rest."""
        summary = {"checked": 0, "skipped": 0, "triggered": 0, "failed": 0}
        if self._stopped:
            return summary

        async with self._tracked():
            alerts = await self.price_cache.get_active_alerts()
            logger.info(f"Processing {len(alerts)} active price alerts")
            for alert in alerts:
                if self._stopped:
                    break
                try:
                    status = await self._check_alert(alert)
                except Exception as e:
                    summary["failed"] += 1
                    logger.error(f"Error checking price alert {alert.id}: {e!r}")
                    continue
                if status == "skipped":
                    summary["skipped"] += 1
                    continue
                summary["checked"] += 1
                if status == "triggered":
                    summary["triggered"] += 1
                if self.alert_check_delay > 0:
                    await asyncio.sleep(self.alert_check_delay)

        logger.info(f"Price alert sweep: {summary}")
        return summary

    async def _check_alert(self, alert: PriceAlert) -> str:
        now = self._clock()
        if now - alert.last_checked_at < self.alert_recheck.total_seconds():
            return "skipped"

        provider = self.providers.get(alert.kind)
        if provider is None:
            raise AlertCheckFailed(f"no provider for {alert.kind}")

        result = await self.executor.run(
            lambda: provider.search(alert.search_params), self.retry_policy, self._cancel_token
        )
        if isinstance(result, Cancelled):
            return "skipped"
        if not isinstance(result, Success):
            raise AlertCheckFailed(str(result.error)) from result.error

        current_price = lowest_price(result.value.get("offers", []))
        changes: dict[str, Any] = {"current_price": current_price, "last_checked_at": now}
        status = "checked"
        if 0 < current_price <= alert.target_price:
            if await self._notify(alert, current_price):
                changes["alerts_sent"] = alert.alerts_sent + 1
            status = "triggered"

        await self.price_cache.update_alert(alert.id, **changes)
        return status

    async def _notify(self, alert: PriceAlert, current_price: float) -> bool:
        logger.info(
            f"Price alert triggered for user {alert.user_id}: {current_price:.2f} <= {alert.target_price:.2f}"
        )
        label = "Flight" if alert.kind == "flight" else "Hotel"
        payload = {
            "type": "PRICE_ALERT",
            "title": f"Price Alert: {label} Deal Found!",
            "message": (
                f"The price has dropped to ${current_price:.2f}, "
                f"which meets your target of ${alert.target_price:.2f}."
            ),
            "data": {
                "alert_id": alert.id,
                "current_price": current_price,
                "target_price": alert.target_price,
                "search_params": alert.search_params,
            },
        }
        try:
            await self.notifier.create(alert.user_id, payload)
        except Exception as e:
            logger.error(f"Error sending price alert {alert.id}: {e!r}")
            return False
        return True

    # Maintenance

    async def cleanup(self) -> dict:
        """Prune expired price data and purge inactive jobs."""
        logger.info("Cleaning up expired price data...")
        async with self._tracked():
            summary = await self.price_cache.clear_expired()

            inactive = [j.id for j in self._jobs.values() if not j.is_active and j.id not in self._running]
            for job_id in inactive:
                await self.remove_job(job_id)
            removed = len(inactive)
            for job in await self.price_cache.load_jobs():
                if not job.is_active and job.id not in self._jobs:
                    await self.price_cache.delete_job(job.id)
                    removed += 1

        summary["inactive_jobs_removed"] = removed
        logger.info(f"Cleanup finished: {summary}")
        return summary

    async def check_cache_health(self) -> dict:
        return await self.price_cache.cache.health_check()

    def get_stats(self) -> dict:
        now = self._clock()
        active = [j for j in self._jobs.values() if j.is_active]
        return {
            "is_running": self.is_running,
            "total_jobs": len(self._jobs),
            "active_jobs": len(active),
            "inactive_jobs": len(self._jobs) - len(active),
            "active_updates": len(self._running),
            "queued_updates": sum(1 for j in active if j.next_due_at <= now and j.id not in self._running),
            "cache_mode": self.price_cache.cache.mode,
        }
