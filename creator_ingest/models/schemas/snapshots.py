"""
Pydantic schemas for snapshot tracking records exposed to operational tooling.
"""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, ConfigDict

from creator_ingest.models.db.enums import SnapshotStatus

class SnapshotRead(BaseModel):
    snapshot_id: str
    creator_id: str
    status: SnapshotStatus
    source_urls: List[str]
    poll_attempts: int
    posts_retrieved: int
    created_count: int
    updated_count: int
    skipped_count: int
    error_count: int
    error: Optional[str]
    error_code: Optional[str]
    created_at: datetime
    last_checked_at: Optional[datetime]
    processed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)

