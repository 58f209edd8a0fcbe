"""
Snapshot tracking endpoints for the async provider pipeline.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from creator_ingest.api.deps import get_resources, verify_cron_secret
from creator_ingest.models.db.enums import SnapshotStatus
from creator_ingest.models.schemas.base import ResponseBase
from creator_ingest.models.schemas.snapshots import SnapshotRead
from creator_ingest.resources import Resources
from creator_ingest.services.snapshot_collector import SnapshotCollector
from creator_ingest.utils import get_logger

router = APIRouter()
logger = get_logger(__name__)

def _collector(resources: Resources) -> SnapshotCollector:
    if resources.snapshot_collector is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Snapshot provider not configured")
    return resources.snapshot_collector

@router.get(
    "/",
    response_model=ResponseBase,
    summary="List tracked snapshots"
)
async def list_snapshots(
    status_filter: Optional[SnapshotStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    resources: Resources = Depends(get_resources),
) -> ResponseBase:
    rows = _collector(resources).list_snapshots(status=status_filter, limit=limit)
    items = [SnapshotRead.model_validate(row).model_dump(mode="json") for row in rows]
    return ResponseBase(success=True, message=f"{len(items)} snapshot(s)", data={"snapshots": items})

@router.post(
    "/requeue",
    response_model=ResponseBase,
    summary="Ensure every pending snapshot has a poll job",
    dependencies=[Depends(verify_cron_secret)],
)
async def requeue_snapshots(
    request: Request,
    limit: Optional[int] = Query(None, ge=1, le=500),
    resources: Resources = Depends(get_resources),
) -> ResponseBase:
    summary = _collector(resources).requeue_pending(limit=limit)
    logger.info("Snapshot polls requeued", **summary)
    return ResponseBase(success=True, message=f"Queued {summary['queued']} snapshot poll(s)", data=summary)
