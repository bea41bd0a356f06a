"""Request dependencies — caller identity and the services wired up at startup."""

from fastapi import Header, HTTPException, Request

from farewatch.services.price_cache import PriceCacheManager
from farewatch.services.price_scheduler import PriceScheduler
from farewatch.services.providers import SearchProvider
from farewatch.services.retry_executor import RetryExecutor


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Identity is asserted by the fronting gateway via ``X-User-Id``."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_scheduler(request: Request) -> PriceScheduler:
    return request.app.state.scheduler


def get_price_cache(request: Request) -> PriceCacheManager:
    return request.app.state.price_cache


def get_providers(request: Request) -> dict[str, SearchProvider]:
    return request.app.state.providers


def get_executor(request: Request) -> RetryExecutor:
    return request.app.state.executor
