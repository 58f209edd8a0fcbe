"""Two-phase snapshot collector.

Phase 1 (``trigger``): ask the async provider to start a collection, persist a
``pending`` snapshot row and schedule the first status poll as a job.

Phase 2 (``poll``): one status check per call. Never sleeps: if the provider is
still running the caller gets a ``PollRetry`` with the next delay and the job
store reschedules the poll. A ready snapshot is downloaded, tagged with its
creator and written through the content store exactly once; repeated polls of
a terminal snapshot are idempotent.

Lifecycle: pending -> processing -> processed | failed. Pending/processing may
be revisited (transient errors); processed/failed are terminal.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from creator_ingest.config import SNAPSHOT_SETTINGS, SUMMARY_SETTINGS
from creator_ingest.integrations.base import AsyncSnapshotProvider
from creator_ingest.integrations.errors import CollectorError, is_permanent
from creator_ingest.jobs.job import QueueUnavailableError
from creator_ingest.jobs.manager import JobQueueManager
from creator_ingest.models.db.enums import SnapshotStatus
from creator_ingest.models.db.snapshots import Snapshot
from creator_ingest.services.content_events import ContentEventStream
from creator_ingest.services.content_store import ContentStore
from creator_ingest.utils import get_logger, log_business_event
from creator_ingest.utils.backoff import compute_backoff_seconds
from creator_ingest.utils.time import utc_now

logger = get_logger(__name__)


# ------------------------------ poll outcomes ------------------------------ #
@dataclass(slots=True, frozen=True)
class PollCompleted:
    result: dict = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class PollFailed:
    reason: str


@dataclass(slots=True, frozen=True)
class PollRetry:
    delay_seconds: float
    reason: str = ""


PollOutcome = Union[PollCompleted, PollFailed, PollRetry]


def _snapshot_result(snap: Snapshot) -> dict[str, Any]:
    return {
        "snapshot_id": snap.snapshot_id,
        "status": snap.status.value,
        "poll_attempts": snap.poll_attempts,
        "posts_retrieved": snap.posts_retrieved,
        "created": snap.created_count,
        "updated": snap.updated_count,
        "skipped": snap.skipped_count,
        "errors": snap.error_count,
    }


class SnapshotCollector:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider: AsyncSnapshotProvider,
        manager: JobQueueManager,
        *,
        events: Optional[ContentEventStream] = None,
        max_poll_attempts: Optional[int] = None,
        initial_poll_delay: Optional[float] = None,
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.manager = manager
        self.events = events
        self.max_poll_attempts = int(max_poll_attempts if max_poll_attempts is not None else SNAPSHOT_SETTINGS["max_poll_attempts"])
        self.initial_poll_delay = float(
            initial_poll_delay if initial_poll_delay is not None else SNAPSHOT_SETTINGS["initial_poll_delay_seconds"]
        )

    # ----------------------------- phase 1 ----------------------------- #
    async def trigger(self, creator_id: str, source_urls: list[str]) -> str:
        snapshot_id = await self.provider.trigger_async(source_urls)
        with self.session_factory() as session:
            session.add(Snapshot(
                snapshot_id=snapshot_id,
                creator_id=creator_id,
                dataset_id=getattr(self.provider, "dataset_id", None),
                source_urls=list(source_urls),
                status=SnapshotStatus.PENDING,
                poll_attempts=0,
            ))
            session.commit()

        try:
            self.manager.enqueue_snapshot_poll(snapshot_id, creator_id, delay_seconds=self.initial_poll_delay)
        except QueueUnavailableError:
            # Row is persisted, so requeue_pending() will pick it up.
            logger.error("Snapshot persisted but poll job could not be queued", snapshot_id=snapshot_id, creator_id=creator_id)
            raise

        log_business_event("snapshot_triggered", {"snapshot_id": snapshot_id, "urls": len(source_urls)}, creator_id=creator_id)
        return snapshot_id

    # ----------------------------- phase 2 ----------------------------- #
    def _fail(self, session: Session, snap: Snapshot, reason: str, code: Optional[str] = None) -> PollFailed:
        snap.status = SnapshotStatus.FAILED
        snap.error = reason
        snap.error_code = code
        snap.processed_at = utc_now()
        session.commit()
        logger.warning("Snapshot failed", snapshot_id=snap.snapshot_id, reason=reason, error_code=code)
        log_business_event("snapshot_failed", {"snapshot_id": snap.snapshot_id, "reason": reason}, creator_id=snap.creator_id)
        return PollFailed(reason)

    def _not_ready(self, session: Session, snap: Snapshot, reason: str) -> PollOutcome:
        attempts = snap.poll_attempts
        if attempts >= self.max_poll_attempts:
            return self._fail(session, snap, f"Timed out waiting for provider after {attempts} polls", "timeout")
        snap.error = reason or None
        session.commit()
        delay = compute_backoff_seconds(
            attempts,
            base=float(SNAPSHOT_SETTINGS["poll_backoff_base_seconds"]),
            factor=float(SNAPSHOT_SETTINGS["poll_backoff_factor"]),
            max_seconds=float(SNAPSHOT_SETTINGS["poll_backoff_max_seconds"]),
            jitter_pct=0,
        )
        logger.info("Snapshot not ready", snapshot_id=snap.snapshot_id, attempts=attempts, next_poll_in=delay, reason=reason)
        return PollRetry(delay, reason)

    def _provider_error(self, session: Session, snap: Snapshot, exc: CollectorError) -> PollOutcome:
        if is_permanent(exc):
            return self._fail(session, snap, str(exc), exc.code or type(exc).__name__)
        return self._not_ready(session, snap, f"provider error: {exc}")

    async def poll(self, snapshot_id: str) -> PollOutcome:
        with self.session_factory() as session:
            snap = session.get(Snapshot, snapshot_id)
            if snap is None:
                return PollFailed(f"Snapshot {snapshot_id} not found")
            if snap.status == SnapshotStatus.PROCESSED:
                return PollCompleted(_snapshot_result(snap))
            if snap.status == SnapshotStatus.FAILED:
                return PollFailed(snap.error or "snapshot failed")

            snap.poll_attempts = (snap.poll_attempts or 0) + 1
            snap.last_checked_at = utc_now()
            session.commit()

            try:
                status = await self.provider.poll_status(snapshot_id)
            except CollectorError as e:
                return self._provider_error(session, snap, e)

            if status.status == "failed":
                return self._fail(session, snap, status.error or "provider reported failure", status.error_code)
            if status.status != "ready":
                return self._not_ready(session, snap, "provider still running")

            snap.status = SnapshotStatus.PROCESSING
            snap.provider_metadata = {**(snap.provider_metadata or {}), "result_count": status.result_count, **status.raw}
            session.commit()

            try:
                records = await self.provider.download(snapshot_id)
            except CollectorError as e:
                return self._provider_error(session, snap, e)

            tagged = [record.with_creator(snap.creator_id) for record in records]
            result = ContentStore(session, events=self.events).store_batch(tagged)

            snap.status = SnapshotStatus.PROCESSED
            snap.posts_retrieved = len(records)
            snap.created_count = result.created
            snap.updated_count = result.updated
            snap.skipped_count = result.skipped
            snap.error_count = len(result.errors)
            snap.error = None
            snap.processed_at = utc_now()
            session.commit()

            outcome = _snapshot_result(snap)
            creator_id = snap.creator_id

        log_business_event("snapshot_processed", outcome, creator_id=creator_id)
        if result.created_ids and SUMMARY_SETTINGS.get("enabled", True):
            try:
                self.manager.enqueue_summarization(result.created_ids, creator_id)
            except QueueUnavailableError as e:
                logger.error("Summarization enqueue failed", snapshot_id=snapshot_id, error=str(e))
                outcome["summarization_error"] = str(e)
        return PollCompleted(outcome)

    # ----------------------------- operations ----------------------------- #
    def requeue_pending(self, limit: Optional[int] = None) -> dict[str, int]:
        """Ensure every non-terminal snapshot has a poll job (oldest first)."""
        limit = int(limit if limit is not None else SNAPSHOT_SETTINGS["requeue_batch_limit"])
        with self.session_factory() as session:
            stmt = (
                select(Snapshot)
                .where(Snapshot.status.in_([SnapshotStatus.PENDING, SnapshotStatus.PROCESSING]))
                .order_by(Snapshot.created_at)
                .limit(limit)
            )
            pending = [(s.snapshot_id, s.creator_id) for s in session.execute(stmt).scalars()]

        queued = 0
        for snapshot_id, creator_id in pending:
            if self.manager.enqueue_snapshot_poll(snapshot_id, creator_id).queued:
                queued += 1
        summary = {"checked": len(pending), "queued": queued, "already_queued": len(pending) - queued}
        logger.info("Pending snapshots requeued", **summary)
        return summary

    def list_snapshots(self, status: Optional[SnapshotStatus] = None, limit: int = 50) -> list[Snapshot]:
        with self.session_factory() as session:
            stmt = select(Snapshot).order_by(Snapshot.created_at.desc()).limit(limit)
            if status is not None:
                stmt = stmt.where(Snapshot.status == status)
            rows = list(session.execute(stmt).scalars())
            session.expunge_all()
            return rows


__all__ = [
    "SnapshotCollector",
    "PollCompleted",
    "PollFailed",
    "PollRetry",
    "PollOutcome",
]
