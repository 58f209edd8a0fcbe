"""
Queue operations endpoints (stats, cleanup, job inspection).
"""
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from creator_ingest.api.deps import get_resources, verify_cron_secret
from creator_ingest.models.schemas.base import ResponseBase
from creator_ingest.models.schemas.queues import CleanupRequest
from creator_ingest.resources import Resources
from creator_ingest.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)

@router.get(
    "/stats",
    response_model=ResponseBase,
    summary="Per-queue job counts"
)
async def queue_stats(
    request: Request,
    use_cache: bool = True,
    resources: Resources = Depends(get_resources),
) -> ResponseBase:
    """Counts per queue (waiting, active, completed, failed, delayed, total), cached briefly."""
    start_time = time.time()
    stats = resources.manager.get_stats(use_cache=use_cache)
    log_performance(
        operation="queue_stats",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"cached": stats["_meta"]["cached"]},
    )
    return ResponseBase(success=True, message="Queue stats", data=stats)

@router.post(
    "/cleanup",
    response_model=ResponseBase,
    summary="Remove old completed / failed jobs",
    dependencies=[Depends(verify_cron_secret)],
)
async def cleanup_queues(
    request: Request,
    body: Optional[CleanupRequest] = None,
    resources: Resources = Depends(get_resources),
) -> ResponseBase:
    body = body or CleanupRequest()
    removed = resources.manager.cleanup(
        completed_age_seconds=body.completed_age_seconds,
        failed_age_seconds=body.failed_age_seconds,
        limit=body.limit,
    )
    total = sum(n for per_queue in removed.values() for n in per_queue.values())
    logger.info("Queue cleanup completed", removed=total)
    return ResponseBase(success=True, message=f"Removed {total} job(s)", data={"removed": removed})

@router.get(
    "/{queue}/jobs/{dedup_key}",
    response_model=ResponseBase,
    summary="Inspect a job by dedup key"
)
async def get_job(
    queue: str,
    dedup_key: str,
    resources: Resources = Depends(get_resources),
) -> ResponseBase:
    try:
        job = resources.manager.get_job(queue, dedup_key)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No job '{dedup_key}' in queue '{queue}'")
    return ResponseBase(success=True, message="Job found", data={"job": job.to_dict()})
