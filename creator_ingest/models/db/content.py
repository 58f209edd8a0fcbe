from __future__ import annotations
"""SQLAlchemy model for normalized content items collected from creator sources."""
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String, Text, ForeignKey, DateTime, Boolean, Enum, JSON, UniqueConstraint
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .creators import Creator
from creator_ingest.database import Base
from creator_ingest.utils.time import utc_now
from .enums import ProcessingStatus

class ContentItem(Base):
    __tablename__ = "content"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    creator_id: Mapped[str] = mapped_column(String(64), ForeignKey("creators.id"), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    platform_content_id: Mapped[str] = mapped_column(String(255), nullable=False)

    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    published_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    media_urls: Mapped[list | None] = mapped_column(JSON, nullable=True)
    engagement_metrics: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    referenced_content: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Derived on every write
    word_count: Mapped[int] = mapped_column(Integer, default=0)
    reading_time_minutes: Mapped[int] = mapped_column(Integer, default=0)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    processing_status: Mapped[ProcessingStatus] = mapped_column(
        Enum(ProcessingStatus), default=ProcessingStatus.PENDING, index=True
    )
    # Soft delete is owned by the content management service
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    creator: Mapped["Creator"] = relationship("Creator", back_populates="content_items")

    __table_args__ = (
        UniqueConstraint('creator_id', 'platform', 'platform_content_id',
                        name='unique_content_per_creator_platform'),
    )
