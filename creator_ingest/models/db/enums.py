"""Central Enum definitions for pipeline states.

These replace scattered string literals to ensure consistency across
DB models, schemas, job payloads and collectors.
"""
from __future__ import annotations
import enum


class Platform(str, enum.Enum):
    YOUTUBE = "youtube"
    TWITTER = "twitter"
    THREADS = "threads"
    LINKEDIN = "linkedin"
    RSS = "rss"
    WEBSITE = "website"


class CreatorStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class UrlValidationStatus(str, enum.Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"

# ------------------ Snapshot / Content Processing Enums ------------------ #

class SnapshotStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SnapshotStatus.PROCESSED, SnapshotStatus.FAILED)


class ProcessingStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class ReferenceType(str, enum.Enum):
    QUOTE = "quote"
    RETWEET = "retweet"
    REPLY = "reply"


class MediaType(str, enum.Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    LINK_PREVIEW = "link_preview"

__all__ = [
    "Platform",
    "CreatorStatus",
    "UrlValidationStatus",
    "SnapshotStatus",
    "ProcessingStatus",
    "ReferenceType",
    "MediaType",
]
