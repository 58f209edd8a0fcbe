from __future__ import annotations
"""SQLAlchemy models for tracked creators and their registered source URLs.

Owned by the creator management service; the ingestion core only reads them
and writes the run metadata block (``last_fetched_at`` / ``last_fetch_stats``).
"""
from typing import TYPE_CHECKING
from sqlalchemy import Integer, String, ForeignKey, DateTime, Enum, JSON
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .content import ContentItem
from creator_ingest.database import Base
from creator_ingest.utils.time import utc_now
from .enums import CreatorStatus, UrlValidationStatus

class Creator(Base):
    __tablename__ = "creators"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[CreatorStatus] = mapped_column(Enum(CreatorStatus), default=CreatorStatus.ACTIVE, index=True)
    avatar_url: Mapped[str | None] = mapped_column(String, nullable=True)
    # "metadata" is reserved on declarative classes
    creator_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    urls: Mapped[list["CreatorUrl"]] = relationship(
        "CreatorUrl", back_populates="creator", cascade="all, delete-orphan", order_by="CreatorUrl.id"
    )
    content_items: Mapped[list["ContentItem"]] = relationship("ContentItem", back_populates="creator")


class CreatorUrl(Base):
    __tablename__ = "creator_urls"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    creator_id: Mapped[str] = mapped_column(String(64), ForeignKey("creators.id"), nullable=False, index=True)
    # Free-form: sources may be registered for platforms without a collector yet
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    url: Mapped[str] = mapped_column(String, nullable=False)
    validation_status: Mapped[UrlValidationStatus] = mapped_column(
        Enum(UrlValidationStatus), default=UrlValidationStatus.VALID
    )
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=utc_now)

    creator: Mapped["Creator"] = relationship("Creator", back_populates="urls")
