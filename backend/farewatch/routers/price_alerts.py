"""Price alerts router."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError

from farewatch.dependencies import get_current_user_id, get_price_cache
from farewatch.schemas.pricing import SearchKind, validate_search_params
from farewatch.services.price_cache import PriceCacheManager

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateAlertRequest(BaseModel):
    kind: SearchKind = "flight"
    search_params: dict[str, Any]
    target_price: float = Field(gt=0)


class UpdateAlertRequest(BaseModel):
    is_active: bool | None = None
    target_price: float | None = Field(default=None, gt=0)


@router.post("")
async def create_alert(
    req: CreateAlertRequest,
    user_id: str = Depends(get_current_user_id),
    price_cache: PriceCacheManager = Depends(get_price_cache),
):
    """Create a price alert."""
    try:
        params = validate_search_params(req.kind, req.search_params)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    alert_id = await price_cache.create_alert(user_id, req.kind, params, req.target_price)
    if alert_id is None:
        raise HTTPException(status_code=503, detail="Price alerts are temporarily unavailable")
    alert = await price_cache.get_alert(alert_id)
    return alert.model_dump() if alert else {"id": alert_id}


@router.get("")
async def list_alerts(
    user_id: str = Depends(get_current_user_id),
    price_cache: PriceCacheManager = Depends(get_price_cache),
):
    """List the user's price alerts, newest first."""
    alerts = await price_cache.get_user_alerts(user_id)
    return {"alerts": [a.model_dump() for a in alerts], "count": len(alerts)}


@router.patch("/{alert_id}")
async def update_alert(
    alert_id: str,
    req: UpdateAlertRequest,
    user_id: str = Depends(get_current_user_id),
    price_cache: PriceCacheManager = Depends(get_price_cache),
):
    """Pause, resume or retarget an alert."""
    alert = await price_cache.get_alert(alert_id)
    if alert is None or alert.user_id != user_id:
        raise HTTPException(status_code=404, detail="Price alert not found")

    changes = req.model_dump(exclude_none=True)
    if not changes:
        return alert.model_dump()
    updated = await price_cache.update_alert(alert_id, **changes)
    if updated is None:
        raise HTTPException(status_code=503, detail="Price alerts are temporarily unavailable")
    return updated.model_dump()


@router.delete("/{alert_id}")
async def delete_alert(
    alert_id: str,
    user_id: str = Depends(get_current_user_id),
    price_cache: PriceCacheManager = Depends(get_price_cache),
):
    """Delete a price alert."""
    deleted = await price_cache.delete_alert(alert_id, user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Price alert not found")
    return {"deleted": True}
