from .base import ResponseBase
from .content import MediaRef, EngagementMetrics, CandidateRecord, ContentInput
from .snapshots import SnapshotRead
from .queues import CleanupRequest, EnqueueCreatorsRequest

__all__ = [
    "ResponseBase",
    "MediaRef",
    "EngagementMetrics",
    "CandidateRecord",
    "ContentInput",
    "SnapshotRead",
    "CleanupRequest",
    "EnqueueCreatorsRequest",
]
