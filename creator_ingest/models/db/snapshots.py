from __future__ import annotations
"""SQLAlchemy model tracking asynchronous provider collections (trigger now, collect later)."""
from sqlalchemy import Integer, String, Text, DateTime, Enum, JSON
from sqlalchemy.orm import Mapped, mapped_column

from creator_ingest.database import Base
from creator_ingest.utils.time import utc_now
from .enums import SnapshotStatus

class Snapshot(Base):
    __tablename__ = "snapshots"
    snapshot_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    dataset_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source_urls: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[SnapshotStatus] = mapped_column(Enum(SnapshotStatus), default=SnapshotStatus.PENDING, index=True)
    poll_attempts: Mapped[int] = mapped_column(Integer, default=0)

    posts_retrieved: Mapped[int] = mapped_column(Integer, default=0)
    created_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)

    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    last_checked_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
