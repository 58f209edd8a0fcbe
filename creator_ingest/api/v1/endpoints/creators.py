"""
Creator collection scheduling endpoints.
"""
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from creator_ingest.api.deps import get_db, get_resources, verify_cron_secret
from creator_ingest.models.db.enums import CreatorStatus
from creator_ingest.models.schemas.base import ResponseBase
from creator_ingest.models.schemas.queues import EnqueueCreatorsRequest
from creator_ingest.resources import Resources
from creator_ingest.services.creator_directory import CreatorDirectory, CreatorNotFoundError
from creator_ingest.utils import get_logger, log_business_event, log_performance

router = APIRouter(dependencies=[Depends(verify_cron_secret)])
logger = get_logger(__name__)

@router.post(
    "/enqueue",
    response_model=ResponseBase,
    summary="Queue collection jobs for every active creator"
)
async def enqueue_all_creators(
    request: Request,
    body: Optional[EnqueueCreatorsRequest] = None,
    db: Session = Depends(get_db),
    resources: Resources = Depends(get_resources),
) -> ResponseBase:
    """Bulk-enqueue one ``creator_collection`` job per active creator.

    Creators whose job is still pending are skipped (dedup by creator id).
    """
    start_time = time.time()
    body = body or EnqueueCreatorsRequest()

    creators = CreatorDirectory(db).list_active_creators()
    result = resources.manager.enqueue_creators(
        creators,
        skip_slow_platform=body.skip_slow_platform,
        stagger_seconds=body.stagger_seconds,
    )

    log_business_event(
        event_type="creators_enqueued",
        details={"creators": len(creators), "queued": result.queued, "skipped": result.skipped},
    )
    log_performance(
        operation="enqueue_all_creators",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"creators": len(creators)},
    )
    return ResponseBase(
        success=True,
        message=f"Queued {result.queued} creator(s), skipped {result.skipped}",
        data={"total": len(creators), "queued": result.queued, "skipped": result.skipped, "job_ids": result.job_ids},
    )

@router.post(
    "/{creator_id}/enqueue",
    response_model=ResponseBase,
    summary="Queue a collection job for one creator"
)
async def enqueue_creator(
    creator_id: str,
    request: Request,
    body: Optional[EnqueueCreatorsRequest] = None,
    db: Session = Depends(get_db),
    resources: Resources = Depends(get_resources),
) -> ResponseBase:
    body = body or EnqueueCreatorsRequest()
    try:
        creator = CreatorDirectory(db).get_creator(creator_id)
    except CreatorNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if creator.status != CreatorStatus.ACTIVE:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Creator {creator_id} is {creator.status.value}")

    result = resources.manager.enqueue_creators([creator], skip_slow_platform=body.skip_slow_platform, stagger_seconds=0)

    queued = result.queued == 1
    return ResponseBase(
        success=True,
        message="Creator queued" if queued else "Creator already queued",
        data={"creator_id": creator_id, "queued": queued, "job_id": f"creator:{creator_id}"},
    )
