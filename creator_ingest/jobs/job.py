"""Job record, lifecycle states and handler outcomes."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Union


class JobState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


JOB_STATES: tuple[str, ...] = tuple(s.value for s in JobState)


class QueueUnavailableError(RuntimeError):
    """The backing job store could not be reached; the operation did not happen."""


class PermanentJobError(Exception):
    """Raised by handlers for failures that must not be retried."""


@dataclass(slots=True)
class JobRecord:
    queue: str
    job_id: str
    job_type: str
    payload: dict
    dedup_key: Optional[str] = None
    priority: str = "normal"
    priority_value: int = 5
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    # Generic (retryable) failures only; bounded by max_attempts
    failures_made: int = 0
    max_attempts: int = 3
    created_at: float = 0.0
    ready_at: float = 0.0
    seq: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    lease_token: Optional[str] = None
    lease_expires_at: Optional[float] = None
    stalled_count: int = 0
    last_error: Optional[str] = None
    result: Optional[dict] = None

    def key(self) -> str:
        return f"{self.queue}:{self.job_id}"

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def delay_seconds(self) -> float:
        return max(0.0, self.ready_at - self.created_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "job_id": self.job_id,
            "job_type": self.job_type,
            "payload": self.payload,
            "dedup_key": self.dedup_key,
            "priority": self.priority,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "failures_made": self.failures_made,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at,
            "ready_at": self.ready_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "stalled_count": self.stalled_count,
            "last_error": self.last_error,
            "result": self.result,
        }


# ------------------------------ handler outcomes ------------------------------ #
@dataclass(slots=True, frozen=True)
class Completed:
    result: dict = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Retry:
    """Reschedule the same job after ``delay_seconds``. The handler owns the attempt bound."""
    delay_seconds: float
    reason: str = ""


@dataclass(slots=True, frozen=True)
class Failed:
    reason: str
    retryable: bool = False


JobOutcome = Union[Completed, Retry, Failed]


__all__ = [
    "JobState",
    "JOB_STATES",
    "JobRecord",
    "QueueUnavailableError",
    "PermanentJobError",
    "Completed",
    "Retry",
    "Failed",
    "JobOutcome",
]
