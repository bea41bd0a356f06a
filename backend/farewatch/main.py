import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from farewatch.config import settings

# ─── Logging setup (file + console) ───
_LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
_LOG_DIR.mkdir(exist_ok=True)

_log_level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)

logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        RotatingFileHandler(
            _LOG_DIR / "farewatch.log",
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
        ),
    ],
)

# Quiet noisy libraries
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

from farewatch.routers import monitoring, price_alerts, pricing
from farewatch.services.amadeus_client import AmadeusClient
from farewatch.services.cache_service import CacheService
from farewatch.services.hotel_client import HotelClient
from farewatch.services.notification_service import NotificationService
from farewatch.services.price_cache import PriceCacheManager
from farewatch.services.price_scheduler import PriceScheduler
from farewatch.services.retry_executor import RetryExecutor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: wire services, then launch the scheduler
    cache = CacheService.from_settings(settings)
    health = await cache.health_check()
    logger.info(f"Cache ready in {health['mode']} mode")

    price_cache = PriceCacheManager.from_settings(cache, settings)
    flights = AmadeusClient.from_settings(settings)
    hotels = HotelClient.from_settings(settings)
    if flights.use_mock or hotels.use_mock:
        logger.warning("Provider credentials missing, serving mock offers")
    providers = {"flight": flights, "hotel": hotels}
    notifier = NotificationService.from_settings(settings)
    scheduler = PriceScheduler.from_settings(settings, price_cache, providers, notifier)

    app.state.cache = cache
    app.state.price_cache = price_cache
    app.state.providers = providers
    app.state.executor = RetryExecutor("price search")
    app.state.scheduler = scheduler

    if settings.scheduler_enabled:
        try:
            await scheduler.start()
        except Exception as e:
            logger.error(f"Scheduler failed to start: {e}")

    yield

    # Shutdown
    await scheduler.stop(graceful=True)
    await flights.close()
    await hotels.close()
    await notifier.close()
    await cache.close()
    logger.info("Services closed")


app = FastAPI(
    title="FareWatch",
    description="Price monitoring: tiered refresh, price history and alerts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(pricing.router, prefix="/api/pricing", tags=["pricing"])
app.include_router(price_alerts.router, prefix="/api/price-alerts", tags=["price-alerts"])
app.include_router(monitoring.router, prefix="/api/monitoring", tags=["monitoring"])


@app.get("/api/health")
async def health_check():
    cache = getattr(app.state, "cache", None)
    return {
        "status": "ok",
        "service": "farewatch",
        "cache_mode": cache.mode if cache else None,
    }
