"""
Pydantic schemas for collected content.

``CandidateRecord`` is what collectors hand back: lenient, because a record
may not yet carry its owning creator id (async providers are tagged later)
and because malformed provider data must reach the store to be reported as a
per-record error rather than blowing up the collector. ``ContentInput`` is
the strict form the reconciliation store validates against before writing.
"""
from datetime import datetime
from typing import Optional, Any, Dict, List
from urllib.parse import urlparse
from pydantic import BaseModel, Field, ConfigDict, field_validator

from creator_ingest.models.db.enums import Platform, MediaType, ReferenceType

class MediaRef(BaseModel):
    url: str = Field(min_length=1)
    type: MediaType
    thumbnail_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    link_title: Optional[str] = None
    link_description: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

class EngagementMetrics(BaseModel):
    """Platform engagement counters. Unknown provider extras are kept verbatim."""
    views: Optional[int] = Field(None, ge=0)
    likes: Optional[int] = Field(None, ge=0)
    comments: Optional[int] = Field(None, ge=0)
    shares: Optional[int] = Field(None, ge=0)
    retweets: Optional[int] = Field(None, ge=0)
    bookmarks: Optional[int] = Field(None, ge=0)
    reactions: Optional[int] = Field(None, ge=0)
    custom: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="allow")

class CandidateRecord(BaseModel):
    platform: str
    platform_content_id: str = ""
    url: str = ""
    creator_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    content_body: Optional[str] = None
    thumbnail_url: Optional[str] = None
    published_at: Optional[datetime] = None
    media_urls: List[MediaRef] = Field(default_factory=list)
    engagement_metrics: Optional[EngagementMetrics] = None
    reference_type: Optional[ReferenceType] = None
    referenced_content: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="ignore")

    def with_creator(self, creator_id: str) -> "CandidateRecord":
        return self.model_copy(update={"creator_id": creator_id})

class ContentInput(CandidateRecord):
    """Validated record ready to be written through the reconciliation store."""
    platform: Platform
    platform_content_id: str = Field(min_length=1, max_length=255)
    url: str = Field(min_length=1, max_length=2048)
    creator_id: str = Field(min_length=1, max_length=64)
    title: Optional[str] = Field(None, max_length=500)

    @field_validator("platform_content_id", "creator_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @field_validator("url")
    @classmethod
    def _valid_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("must be an absolute http(s) URL")
        return value
