"""Job state backends.

A backend is the single source of truth for job state. Every transition a
worker relies on (dedup-aware add, claim with lease, lease renewal, settle,
stall recovery, terminal cleanup) is a single atomic operation on the backend,
so cross-worker coordination never depends on locks held by a worker.

In-memory backend (single-process, tests / local development):

Two-heaps strategy per queue:
 1. ready heap: (priority_value, seq, job_id)
 2. delayed heap: (ready_at_ts, seq, job_id)

Entries are invalidated lazily: a heap entry is only honoured if the job still
exists, is in the matching state, and carries the same ``seq`` (every move
back to waiting/delayed assigns a fresh seq). This keeps claim O(log n)
without having to delete from the middle of a heap.
"""
from __future__ import annotations

import dataclasses
import heapq
import threading
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

from creator_ingest.config import QUEUE_SETTINGS
from creator_ingest.jobs.job import JobRecord, JobState, JOB_STATES
from creator_ingest.utils import get_logger

logger = get_logger(__name__)

STALLED_REASON = "job stalled more than allowable limit"


class JobBackend(Protocol):
    name: str

    def add(self, jobs: Sequence[JobRecord], now: float) -> list[bool]: ...
    def get(self, queue: str, job_id: str) -> Optional[JobRecord]: ...
    def remove(self, queue: str, job_id: str) -> bool: ...
    def claim(self, queue: str, now: float, lease_seconds: float, token: str) -> Optional[JobRecord]: ...
    def extend_lease(self, queue: str, job_id: str, token: str, lease_until: float) -> bool: ...
    def finish(self, queue: str, job_id: str, token: str, state: JobState, now: float, *, result: Optional[dict] = None, reason: Optional[str] = None) -> bool: ...
    def reschedule(self, queue: str, job_id: str, token: str, ready_at: float, now: float, reason: str, *, failed: bool = False) -> bool: ...
    def recover_stalled(self, queue: str, now: float, max_stalled: int) -> tuple[list[str], list[str]]: ...
    def counts(self, queue: str) -> dict[str, int]: ...
    def clean(self, queue: str, state: JobState, older_than: float, limit: int) -> int: ...
    def ping(self) -> bool: ...
    def close(self) -> None: ...


@dataclass
class _QueueState:
    jobs: dict[str, JobRecord] = field(default_factory=dict)
    ready: list[tuple[int, int, str]] = field(default_factory=list)
    delayed: list[tuple[float, int, str]] = field(default_factory=list)


class MemoryJobBackend:
    name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._queues: dict[str, _QueueState] = {}
        self._seq_counter = 0

    # ----------------------------- internal helpers ----------------------------- #
    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    def _queue(self, name: str) -> _QueueState:
        state = self._queues.get(name)
        if state is None:
            state = self._queues[name] = _QueueState()
        return state

    def _place(self, q: _QueueState, job: JobRecord, now: float) -> None:
        """Put a job into waiting or delayed depending on its ready time."""
        job.seq = self._next_seq()
        if job.ready_at > now:
            job.state = JobState.DELAYED
            heapq.heappush(q.delayed, (job.ready_at, job.seq, job.job_id))
        else:
            job.state = JobState.WAITING
            heapq.heappush(q.ready, (job.priority_value, job.seq, job.job_id))

    def _promote_delayed(self, q: _QueueState, now: float) -> None:
        while q.delayed and q.delayed[0][0] <= now:
            _, seq, job_id = heapq.heappop(q.delayed)
            job = q.jobs.get(job_id)
            if job is None or job.state != JobState.DELAYED or job.seq != seq:
                continue
            self._place(q, job, now)

    def _owned(self, q: _QueueState, job_id: str, token: str) -> Optional[JobRecord]:
        job = q.jobs.get(job_id)
        if job is None or job.state != JobState.ACTIVE or job.lease_token != token:
            return None
        return job

    # ----------------------------- public API ----------------------------- #
    def add(self, jobs: Sequence[JobRecord], now: float) -> list[bool]:
        results: list[bool] = []
        with self._lock:
            for job in jobs:
                q = self._queue(job.queue)
                existing = q.jobs.get(job.job_id)
                if existing is not None and not existing.is_terminal:
                    results.append(False)
                    continue
                stored = dataclasses.replace(job)
                q.jobs[stored.job_id] = stored
                self._place(q, stored, now)
                results.append(True)
        return results

    def get(self, queue: str, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            job = self._queue(queue).jobs.get(job_id)
            return dataclasses.replace(job) if job is not None else None

    def remove(self, queue: str, job_id: str) -> bool:
        with self._lock:
            return self._queue(queue).jobs.pop(job_id, None) is not None

    def claim(self, queue: str, now: float, lease_seconds: float, token: str) -> Optional[JobRecord]:
        with self._lock:
            q = self._queue(queue)
            self._promote_delayed(q, now)
            while q.ready:
                _, seq, job_id = heapq.heappop(q.ready)
                job = q.jobs.get(job_id)
                if job is None or job.state != JobState.WAITING or job.seq != seq:
                    continue
                job.state = JobState.ACTIVE
                job.attempts_made += 1
                job.started_at = now
                job.lease_token = token
                job.lease_expires_at = now + lease_seconds
                return dataclasses.replace(job)
            return None

    def extend_lease(self, queue: str, job_id: str, token: str, lease_until: float) -> bool:
        with self._lock:
            job = self._owned(self._queue(queue), job_id, token)
            if job is None:
                return False
            job.lease_expires_at = lease_until
            return True

    def finish(self, queue: str, job_id: str, token: str, state: JobState, now: float, *, result: Optional[dict] = None, reason: Optional[str] = None) -> bool:
        if not state.is_terminal:
            raise ValueError(f"finish() requires a terminal state, got {state}")
        with self._lock:
            job = self._owned(self._queue(queue), job_id, token)
            if job is None:
                return False
            job.state = state
            job.finished_at = now
            job.lease_token = None
            job.lease_expires_at = None
            if result is not None:
                job.result = result
            if reason is not None:
                job.last_error = reason
            return True

    def reschedule(self, queue: str, job_id: str, token: str, ready_at: float, now: float, reason: str, *, failed: bool = False) -> bool:
        with self._lock:
            q = self._queue(queue)
            job = self._owned(q, job_id, token)
            if job is None:
                return False
            if failed:
                job.failures_made += 1
            job.lease_token = None
            job.lease_expires_at = None
            job.last_error = reason or job.last_error
            job.ready_at = ready_at
            self._place(q, job, now)
            return True

    def recover_stalled(self, queue: str, now: float, max_stalled: int) -> tuple[list[str], list[str]]:
        requeued: list[str] = []
        failed: list[str] = []
        with self._lock:
            q = self._queue(queue)
            for job in list(q.jobs.values()):
                if job.state != JobState.ACTIVE or job.lease_expires_at is None or job.lease_expires_at > now:
                    continue
                job.lease_token = None
                job.lease_expires_at = None
                job.stalled_count += 1
                if job.stalled_count > max_stalled:
                    job.state = JobState.FAILED
                    job.finished_at = now
                    job.last_error = STALLED_REASON
                    failed.append(job.job_id)
                else:
                    job.ready_at = now
                    self._place(q, job, now)
                    requeued.append(job.job_id)
        return requeued, failed

    def counts(self, queue: str) -> dict[str, int]:
        with self._lock:
            result = {state: 0 for state in JOB_STATES}
            for job in self._queue(queue).jobs.values():
                result[job.state.value] += 1
            return result

    def clean(self, queue: str, state: JobState, older_than: float, limit: int) -> int:
        with self._lock:
            q = self._queue(queue)
            expired = sorted(
                (j for j in q.jobs.values() if j.state == state and (j.finished_at or 0.0) <= older_than),
                key=lambda j: j.finished_at or 0.0,
            )[:limit]
            for job in expired:
                del q.jobs[job.job_id]
            return len(expired)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # ----------------------------- test utilities ----------------------------- #
    def purge(self) -> None:
        """Drop every job in every queue. Intended for test isolation only."""
        with self._lock:
            self._queues.clear()


def create_job_backend() -> JobBackend:
    """Create and return the appropriate backend based on configuration.

    Redis is only chosen when it answers a ping at startup. Once a Redis
    backend is in use, later connection errors surface to callers as
    ``QueueUnavailableError`` instead of diverting jobs to memory.
    """
    use_redis = bool(QUEUE_SETTINGS.get("use_redis", False))
    if use_redis:
        try:
            from creator_ingest.jobs.redis_backend import RedisJobBackend
            backend = RedisJobBackend()
            if backend.ping():
                logger.info("Using Redis-backed job store", url=backend.redis_url)
                return backend
            logger.warning("REDIS CONNECTION FAILED: Redis server is not reachable. Using in-memory job store.")
        except Exception as e:
            logger.warning("Error initializing Redis job store, falling back to in-memory store", error=str(e))

    logger.info("Using in-memory job store")
    return MemoryJobBackend()


__all__ = ["JobBackend", "MemoryJobBackend", "create_job_backend", "STALLED_REASON"]
