from .enums import (
    Platform,
    CreatorStatus,
    UrlValidationStatus,
    SnapshotStatus,
    ProcessingStatus,
    ReferenceType,
    MediaType,
)
from .creators import Creator, CreatorUrl
from .content import ContentItem
from .snapshots import Snapshot

__all__ = [
    "Platform",
    "CreatorStatus",
    "UrlValidationStatus",
    "SnapshotStatus",
    "ProcessingStatus",
    "ReferenceType",
    "MediaType",
    "Creator",
    "CreatorUrl",
    "ContentItem",
    "Snapshot",
]
