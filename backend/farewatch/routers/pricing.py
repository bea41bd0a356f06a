"""Pricing router — cached price lookups and price history."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from farewatch.dependencies import get_executor, get_price_cache, get_providers
from farewatch.schemas.pricing import SearchKind, validate_search_params
from farewatch.services.price_cache import PriceCacheManager
from farewatch.services.retry_executor import RetryExecutor, RetryExhausted

logger = logging.getLogger(__name__)

router = APIRouter()


class PriceSearchRequest(BaseModel):
    kind: SearchKind = "flight"
    search_params: dict[str, Any]


class PriceHistoryRequest(BaseModel):
    kind: SearchKind = "flight"
    search_params: dict[str, Any]
    days: int = Field(default=30, ge=1, le=90)


def _validated(kind: str, params: dict[str, Any]) -> dict[str, Any]:
    try:
        return validate_search_params(kind, params)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))


@router.post("/search")
async def search_prices(
    req: PriceSearchRequest,
    price_cache: PriceCacheManager = Depends(get_price_cache),
    providers: dict = Depends(get_providers),
    executor: RetryExecutor = Depends(get_executor),
):
    """Return the cached quote set for a search, fetching it if missing."""
    params = _validated(req.kind, req.search_params)
    provider = providers.get(req.kind)
    if provider is None:
        raise HTTPException(status_code=400, detail=f"No provider configured for {req.kind}")

    try:
        quote, from_cache = await price_cache.search_prices(req.kind, params, provider, executor)
    except RetryExhausted as e:
        logger.error(f"Price search failed for {req.kind}: {e}")
        raise HTTPException(status_code=502, detail="Price provider unavailable, please try again")

    return {
        "search_key": quote.search_key,
        "offers": quote.offers,
        "count": len(quote.offers),
        "cached": from_cache,
        "cached_at": quote.cached_at,
        "expires_at": quote.expires_at,
    }


@router.post("/history")
async def price_history(
    req: PriceHistoryRequest,
    price_cache: PriceCacheManager = Depends(get_price_cache),
):
    """Price history points and summary statistics for a search."""
    params = _validated(req.kind, req.search_params)
    points = await price_cache.get_price_history(req.kind, params, req.days)
    stats = await price_cache.get_price_stats(req.kind, params, req.days)
    return {
        "points": [p.model_dump() for p in points],
        "count": len(points),
        "days": req.days,
        "stats": stats,
    }


@router.get("/cached")
async def get_cached(
    kind: SearchKind = Query("flight"),
    origin: str | None = None,
    destination: str | None = None,
    departure_date: str | None = None,
    return_date: str | None = None,
    check_in: str | None = None,
    check_out: str | None = None,
    adults: int = 1,
    price_cache: PriceCacheManager = Depends(get_price_cache),
):
    """Look up a cached quote set without calling any provider."""
    if kind == "flight":
        raw = {"origin": origin, "destination": destination, "departure_date": departure_date,
               "return_date": return_date, "adults": adults}
    else:
        raw = {"destination": destination, "check_in": check_in, "check_out": check_out, "adults": adults}
    params = _validated(kind, {k: v for k, v in raw.items() if v is not None})

    quote = await price_cache.get_cached_price(kind, params)
    if quote is None:
        raise HTTPException(status_code=404, detail="No cached prices for this search")
    return quote.model_dump()
