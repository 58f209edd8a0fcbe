"""Job queue manager: the single entry point for enqueueing and job lifecycle.

Responsibilities:
- Validate payloads against the queue's accepted job types at the boundary.
- Deterministic dedup keys: re-submitting the same logical subject while its
  job is still waiting/active/delayed is absorbed ("skipped"); a terminal job
  under the same key is replaced.
- Bulk submission with optional staggering (``delay = k * interval`` for the
  k-th surviving item) so jobs that call a shared rate-limited provider start
  spread out rather than in a burst.
- Stats with a short-lived cache held on the manager instance.
- Age/count bounded cleanup of terminal jobs.
- Worker-facing lease operations (claim / extend / settle / stall recovery).

Enqueue failures are never swallowed: a backend error surfaces as
``QueueUnavailableError`` and the caller decides what to do.
"""
from __future__ import annotations

import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from pydantic import BaseModel

from creator_ingest.config import (
    CLEANUP_SETTINGS,
    CREATOR_QUEUE,
    DIGEST_QUEUE,
    QUEUE_DEFINITIONS,
    QUEUE_SETTINGS,
    SNAPSHOT_QUEUE,
    STAGGER_SETTINGS,
    SUMMARY_QUEUE,
)
from creator_ingest.jobs.backend import JobBackend
from creator_ingest.jobs.job import (
    Completed,
    Failed,
    JobOutcome,
    JobRecord,
    JobState,
    QueueUnavailableError,
    Retry,
)
from creator_ingest.jobs.payloads import (
    CreatorCollectionPayload,
    DigestPayload,
    SnapshotPollPayload,
    SummarizationPayload,
    parse_payload,
)
from creator_ingest.utils import get_logger, log_business_event
from creator_ingest.utils.backoff import backoff_for_queue

logger = get_logger(__name__)


@dataclass(slots=True)
class EnqueueResult:
    queued: bool
    job_id: Optional[str] = None
    skipped_reason: Optional[str] = None


@dataclass(slots=True)
class BulkItem:
    queue: str
    payload: BaseModel
    dedup_key: Optional[str] = None
    priority: str = "normal"
    delay_seconds: float = 0.0


@dataclass(slots=True)
class BulkEnqueueResult:
    queued: int = 0
    skipped: int = 0
    job_ids: list[str] = field(default_factory=list)


class StatsCache:
    """Single-entry TTL cache for the stats snapshot."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: Optional[dict] = None
        self._stored_at: float = 0.0
        self._lock = threading.Lock()

    def get(self) -> Optional[dict]:
        with self._lock:
            if self._value is None or self._clock() - self._stored_at >= self.ttl_seconds:
                return None
            return self._value

    def put(self, value: dict) -> None:
        with self._lock:
            self._value = value
            self._stored_at = self._clock()

    def invalidate(self) -> None:
        with self._lock:
            self._value = None


class JobQueueManager:
    def __init__(
        self,
        backend: JobBackend,
        *,
        queues: Optional[dict[str, dict]] = None,
        clock: Callable[[], float] = time.time,
        stats_cache: Optional[StatsCache] = None,
    ) -> None:
        self.backend = backend
        self.queues: dict[str, dict] = queues if queues is not None else QUEUE_DEFINITIONS
        self._clock = clock
        priorities_cfg = QUEUE_SETTINGS.get("priorities", {})
        self._priority_map: dict[str, int] = priorities_cfg if isinstance(priorities_cfg, dict) else {"normal": 5}
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        ttl = float(QUEUE_SETTINGS.get("stats_cache_ttl_seconds", 60))  # type: ignore[arg-type]
        self.stats_cache = stats_cache if stats_cache is not None else StatsCache(ttl, clock)

    # ----------------------------- internal helpers ----------------------------- #
    def _queue_config(self, queue: str) -> dict:
        try:
            return self.queues[queue]
        except KeyError:
            raise ValueError(f"Unknown queue '{queue}'") from None

    def _build_job(self, item: BulkItem, now: float) -> JobRecord:
        cfg = self._queue_config(item.queue)
        payload = parse_payload(item.payload)
        if payload.job_type not in cfg.get("job_types", ()):
            raise ValueError(f"Job type '{payload.job_type}' is not accepted by queue '{item.queue}'")
        if item.priority not in self._priority_map:
            raise ValueError(f"Unknown priority '{item.priority}'")
        dedup_key = item.dedup_key or payload.dedup_key()
        return JobRecord(
            queue=item.queue,
            job_id=dedup_key or uuid.uuid4().hex,
            job_type=payload.job_type,
            payload=payload.model_dump(mode="json"),
            dedup_key=dedup_key,
            priority=item.priority,
            priority_value=self._priority_map[item.priority],
            max_attempts=int(cfg.get("max_attempts", 3)),
            created_at=now,
            ready_at=now + max(0.0, float(item.delay_seconds)),
        )

    # ----------------------------- enqueue API ----------------------------- #
    def enqueue(
        self,
        queue: str,
        payload: BaseModel,
        *,
        dedup_key: Optional[str] = None,
        priority: str = "normal",
        delay_seconds: float = 0.0,
    ) -> EnqueueResult:
        now = self._clock()
        job = self._build_job(BulkItem(queue, payload, dedup_key, priority, delay_seconds), now)
        added = self.backend.add([job], now)[0]
        if not added:
            logger.info("Job already pending, skipped", queue=queue, job_id=job.job_id, job_type=job.job_type)
            return EnqueueResult(queued=False, job_id=job.job_id, skipped_reason="duplicate")
        logger.info(
            "Enqueued job",
            queue=queue,
            job_id=job.job_id,
            job_type=job.job_type,
            priority=priority,
            delay=delay_seconds,
        )
        return EnqueueResult(queued=True, job_id=job.job_id)

    def enqueue_bulk(self, items: Sequence[BulkItem], *, stagger_seconds: Optional[float] = None) -> BulkEnqueueResult:
        """Enqueue many jobs in one backend batch.

        Items whose dedup key already maps to a non-terminal job are skipped
        before delays are assigned, so the stagger sequence has no gaps. A job
        that appears between the pre-check and the batch write is still
        rejected atomically by the backend and counted as skipped.
        """
        now = self._clock()
        result = BulkEnqueueResult()
        survivors: list[JobRecord] = []
        seen: set[tuple[str, str]] = set()
        for item in items:
            job = self._build_job(item, now)
            if job.dedup_key is not None:
                ident = (job.queue, job.job_id)
                existing = self.backend.get(job.queue, job.job_id)
                if ident in seen or (existing is not None and not existing.is_terminal):
                    result.skipped += 1
                    continue
                seen.add(ident)
            if stagger_seconds:
                job.ready_at += len(survivors) * float(stagger_seconds)
            survivors.append(job)

        if survivors:
            added = self.backend.add(survivors, now)
            for job, ok in zip(survivors, added):
                if ok:
                    result.queued += 1
                    result.job_ids.append(job.job_id)
                else:
                    result.skipped += 1

        logger.info(
            "Bulk enqueue finished",
            submitted=len(items),
            queued=result.queued,
            skipped=result.skipped,
            stagger_seconds=stagger_seconds,
        )
        return result

    def enqueue_creators(
        self,
        creators: Iterable[Any],
        *,
        skip_slow_platform: bool = False,
        stagger_seconds: Optional[float] = None,
    ) -> BulkEnqueueResult:
        """Queue one collection job per creator (objects with ``id`` / ``display_name``)."""
        if stagger_seconds is None:
            stagger_seconds = float(STAGGER_SETTINGS.get("creator_stagger_seconds", 0))
        items = [
            BulkItem(
                CREATOR_QUEUE,
                CreatorCollectionPayload(
                    creator_id=str(c.id),
                    creator_name=getattr(c, "display_name", "") or "",
                    skip_slow_platform=skip_slow_platform,
                ),
            )
            for c in creators
        ]
        return self.enqueue_bulk(items, stagger_seconds=stagger_seconds)

    def enqueue_summarization(self, content_ids: Sequence[str], creator_id: Optional[str] = None) -> Optional[EnqueueResult]:
        if not content_ids:
            return None
        payload = SummarizationPayload(content_ids=list(content_ids), creator_id=creator_id, requested_at=self._clock())
        return self.enqueue(SUMMARY_QUEUE, payload, priority="high" if creator_id else "normal")

    def enqueue_snapshot_poll(self, snapshot_id: str, creator_id: str, *, delay_seconds: float = 0.0) -> EnqueueResult:
        payload = SnapshotPollPayload(snapshot_id=snapshot_id, creator_id=creator_id)
        return self.enqueue(SNAPSHOT_QUEUE, payload, delay_seconds=delay_seconds)

    def enqueue_digests(
        self,
        users: Iterable[Any],
        digest_date: str,
        *,
        spread_seconds: Optional[float] = None,
    ) -> BulkEnqueueResult:
        """Queue one digest per user (objects with ``id`` / ``email``), randomly spread over a window."""
        if spread_seconds is None:
            spread_seconds = float(STAGGER_SETTINGS.get("digest_spread_seconds", 0))
        items = [
            BulkItem(
                DIGEST_QUEUE,
                DigestPayload(user_id=str(u.id), user_email=u.email, digest_date=digest_date),
                priority="low",
                delay_seconds=random.uniform(0, spread_seconds) if spread_seconds > 0 else 0.0,
            )
            for u in users
        ]
        return self.enqueue_bulk(items)

    # ----------------------------- inspection ----------------------------- #
    def get_job(self, queue: str, dedup_key: str) -> Optional[JobRecord]:
        self._queue_config(queue)
        return self.backend.get(queue, dedup_key)

    def remove_job(self, queue: str, job_id: str) -> bool:
        removed = self.backend.remove(queue, job_id)
        if removed:
            logger.info("Job removed", queue=queue, job_id=job_id)
        return removed

    def get_stats(self, use_cache: bool = True) -> dict:
        if use_cache:
            cached = self.stats_cache.get()
            if cached is not None:
                return {**cached, "_meta": {**cached["_meta"], "cached": True}}

        stats: dict[str, Any] = {}
        for queue in self.queues:
            try:
                counts = self.backend.counts(queue)
                counts["total"] = counts["waiting"] + counts["active"]
                depth = counts["waiting"] + counts["delayed"]
                if depth >= self._warn_depth:
                    logger.warning("Queue depth warning", queue=queue, depth=depth)
            except QueueUnavailableError as e:
                logger.error("Failed to read queue counts", queue=queue, error=str(e))
                counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0, "total": 0, "error": True}
            stats[queue] = counts
        stats["_meta"] = {"cached": False, "generated_at": self._clock(), "backend": self.backend.name}
        self.stats_cache.put(stats)
        return stats

    def cleanup(
        self,
        *,
        completed_age_seconds: Optional[float] = None,
        failed_age_seconds: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> dict[str, dict[str, int]]:
        """Remove terminal jobs older than the thresholds (at most ``limit`` per state per queue)."""
        completed_age = float(completed_age_seconds if completed_age_seconds is not None else CLEANUP_SETTINGS["completed_age_seconds"])
        failed_age = float(failed_age_seconds if failed_age_seconds is not None else CLEANUP_SETTINGS["failed_age_seconds"])
        limit = int(limit if limit is not None else CLEANUP_SETTINGS["limit"])
        now = self._clock()
        removed: dict[str, dict[str, int]] = {}
        for queue in self.queues:
            removed[queue] = {
                "completed": self.backend.clean(queue, JobState.COMPLETED, now - completed_age, limit),
                "failed": self.backend.clean(queue, JobState.FAILED, now - failed_age, limit),
            }
        self.stats_cache.invalidate()
        log_business_event("queue_cleanup", {"removed": removed, "completed_age": completed_age, "failed_age": failed_age})
        return removed

    # ----------------------------- worker-facing ----------------------------- #
    def claim(self, queue: str, *, lease_seconds: Optional[float] = None) -> Optional[JobRecord]:
        cfg = self._queue_config(queue)
        lease = float(lease_seconds if lease_seconds is not None else cfg.get("lease_seconds", 300))
        return self.backend.claim(queue, self._clock(), lease, uuid.uuid4().hex)

    def extend_lease(self, job: JobRecord, *, lease_seconds: Optional[float] = None) -> bool:
        cfg = self._queue_config(job.queue)
        lease = float(lease_seconds if lease_seconds is not None else cfg.get("lease_seconds", 300))
        until = self._clock() + lease
        ok = self.backend.extend_lease(job.queue, job.job_id, job.lease_token or "", until)
        if ok:
            job.lease_expires_at = until
        return ok

    def complete(self, job: JobRecord, result: Optional[dict] = None) -> bool:
        ok = self.backend.finish(job.queue, job.job_id, job.lease_token or "", JobState.COMPLETED, self._clock(), result=result or {})
        if not ok:
            logger.warning("Lease lost before completion; result discarded", queue=job.queue, job_id=job.job_id)
        return ok

    def fail(self, job: JobRecord, reason: str) -> bool:
        ok = self.backend.finish(job.queue, job.job_id, job.lease_token or "", JobState.FAILED, self._clock(), reason=reason)
        if not ok:
            logger.warning("Lease lost before failure could be recorded", queue=job.queue, job_id=job.job_id)
        return ok

    def retry_later(self, job: JobRecord, delay_seconds: float, reason: str = "", *, failed: bool = False) -> bool:
        """Put a claimed job back; ``failed`` charges it against the generic retry budget."""
        now = self._clock()
        ok = self.backend.reschedule(job.queue, job.job_id, job.lease_token or "", now + max(0.0, delay_seconds), now, reason, failed=failed)
        if not ok:
            logger.warning("Lease lost before retry could be scheduled", queue=job.queue, job_id=job.job_id)
        return ok

    def settle(self, job: JobRecord, outcome: JobOutcome) -> JobState | None:
        """Apply a handler outcome to a claimed job; returns the resulting state (None if the lease was lost)."""
        if isinstance(outcome, Completed):
            return JobState.COMPLETED if self.complete(job, outcome.result) else None
        if isinstance(outcome, Retry):
            if not self.retry_later(job, outcome.delay_seconds, outcome.reason):
                return None
            return JobState.DELAYED if outcome.delay_seconds > 0 else JobState.WAITING
        if isinstance(outcome, Failed):
            # Claims spent on explicit Retry outcomes do not count here
            failure = job.failures_made + 1
            if outcome.retryable and failure < job.max_attempts:
                cfg = self._queue_config(job.queue)
                delay = backoff_for_queue(failure, cfg.get("backoff", {}))
                logger.info(
                    "Scheduling job retry",
                    queue=job.queue,
                    job_id=job.job_id,
                    failure=failure,
                    max_attempts=job.max_attempts,
                    delay=round(delay, 2),
                    reason=outcome.reason,
                )
                if not self.retry_later(job, delay, outcome.reason, failed=True):
                    return None
                return JobState.DELAYED if delay > 0 else JobState.WAITING
            return JobState.FAILED if self.fail(job, outcome.reason) else None
        raise TypeError(f"Unsupported job outcome: {outcome!r}")

    def recover_stalled(self, queue: str, *, max_stalled: Optional[int] = None) -> tuple[list[str], list[str]]:
        cfg = self._queue_config(queue)
        limit = int(max_stalled if max_stalled is not None else cfg.get("max_stalled_count", 1))
        requeued, failed = self.backend.recover_stalled(queue, self._clock(), limit)
        if requeued or failed:
            logger.warning("Recovered stalled jobs", queue=queue, requeued=requeued, failed=failed)
        return requeued, failed


__all__ = [
    "JobQueueManager",
    "StatsCache",
    "EnqueueResult",
    "BulkItem",
    "BulkEnqueueResult",
]
