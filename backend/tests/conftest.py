"""Shared fixtures: fake clock, memory cache, scripted providers and a recording sink."""

import asyncio
import random

import pytest

from farewatch.services.cache_service import CacheService, MemoryBackend
from farewatch.services.price_cache import PriceCacheManager
from farewatch.services.price_scheduler import PriceScheduler
from farewatch.services.providers import ProviderError
from farewatch.services.retry_executor import RetryExecutor, RetryPolicy

START = 1_717_200_000.0  # 2024-06-01T00:00:00Z

NYC_LAX = {"origin": "NYC", "destination": "LAX", "departure_date": "2024-06-01", "adults": 1}
PARIS_HOTEL = {"destination": "Paris", "check_in": "2024-07-01", "check_out": "2024-07-04", "adults": 2}

# Retries without real sleeps
FAST_POLICY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=False, name="fast")


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_offers(*prices: float, currency: str = "USD") -> list[dict]:
    return [
        {
            "id": f"offer-{i + 1}",
            "price": {"total": price, "currency": currency},
            "itineraries": [],
            "stops": 0,
            "duration_minutes": 330,
        }
        for i, price in enumerate(prices)
    ]


def server_error(status: int = 503) -> ProviderError:
    return ProviderError(f"upstream returned {status}", status_code=status, provider="fake")


class FakeProvider:
    """Replays ``script`` one step per call (the last step repeats).

    A step is a list of offers, or an exception to raise. When ``gate`` is
    set, calls block until the gate opens.
    """

    def __init__(self, *script, gate: asyncio.Event | None = None):
        self.script = list(script) or [make_offers(300.0)]
        self.gate = gate
        self.calls: list[dict] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.cancelled = 0

    async def search(self, params: dict) -> dict:
        self.calls.append(params)
        step = self.script[min(len(self.calls), len(self.script)) - 1]
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.in_flight -= 1
        if isinstance(step, BaseException):
            raise step
        return {"offers": step, "meta": {"count": len(step), "source": "fake"}}


class RecordingSink:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.sent: list[tuple[str, dict]] = []

    async def create(self, user_id: str, payload: dict) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((user_id, payload))


class FlakyBackend:
    """Wraps a MemoryBackend; every call raises ConnectionError while ``down``."""

    def __init__(self, clock=None, down: bool = True):
        self.inner = MemoryBackend(clock=clock) if clock else MemoryBackend()
        self.down = down

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not callable(attr):
            return attr

        async def call(*args):
            if self.down:
                raise ConnectionError("redis down")
            return await attr(*args)

        return call


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> CacheService:
    return CacheService(primary=None, fallback=MemoryBackend(clock=clock))


@pytest.fixture
def price_cache(cache, clock) -> PriceCacheManager:
    return PriceCacheManager(cache, clock=clock)


@pytest.fixture
def flight_provider() -> FakeProvider:
    return FakeProvider(make_offers(300.0, 420.0))


@pytest.fixture
def hotel_provider() -> FakeProvider:
    return FakeProvider(make_offers(180.0, 260.0))


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_scheduler(price_cache, flight_provider, hotel_provider, sink, clock):
    def factory(**overrides) -> PriceScheduler:
        kwargs = dict(
            price_cache=price_cache,
            providers={"flight": flight_provider, "hotel": hotel_provider},
            notifier=sink,
            executor=RetryExecutor("test refresh"),
            retry_policy=FAST_POLICY,
            alert_check_delay=0,
            clock=clock,
            rng=random.Random(7),
        )
        kwargs.update(overrides)
        return PriceScheduler(**kwargs)

    return factory


@pytest.fixture
def scheduler(make_scheduler) -> PriceScheduler:
    return make_scheduler()
