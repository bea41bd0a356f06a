"""Monitoring router — price refresh jobs and scheduler stats."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError

from farewatch.dependencies import get_current_user_id, get_scheduler
from farewatch.schemas.pricing import PriorityTier, SearchKind, validate_search_params
from farewatch.services.price_scheduler import PriceScheduler

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateJobRequest(BaseModel):
    kind: SearchKind = "flight"
    search_params: dict[str, Any]
    priority_tier: PriorityTier = "medium"


@router.post("/jobs")
async def create_job(
    req: CreateJobRequest,
    user_id: str = Depends(get_current_user_id),
    scheduler: PriceScheduler = Depends(get_scheduler),
):
    """Start monitoring a search at the given priority tier."""
    try:
        params = validate_search_params(req.kind, req.search_params)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    try:
        job_id = await scheduler.add_job(req.kind, params, req.priority_tier, owner_user_id=user_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"job_id": job_id, "priority_tier": req.priority_tier}


@router.get("/jobs")
async def list_jobs(
    user_id: str = Depends(get_current_user_id),
    scheduler: PriceScheduler = Depends(get_scheduler),
):
    """List the caller's monitoring jobs."""
    jobs = [j.model_dump() for j in scheduler.list_jobs() if j.owner_user_id == user_id]
    return {"jobs": jobs, "count": len(jobs)}


@router.delete("/jobs/{job_id}")
async def delete_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    scheduler: PriceScheduler = Depends(get_scheduler),
):
    """Stop monitoring a search."""
    job = scheduler.get_job(job_id)
    if job is None or job.owner_user_id != user_id:
        raise HTTPException(status_code=404, detail="Monitoring job not found")
    await scheduler.remove_job(job_id)
    return {"deleted": True}


@router.get("/stats")
async def get_stats(scheduler: PriceScheduler = Depends(get_scheduler)):
    """Scheduler counters, including deactivated jobs and the cache mode."""
    return scheduler.get_stats()
