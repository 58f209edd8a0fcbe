"""Snapshot poll job handler: one status check per job run."""
from __future__ import annotations

from typing import Optional

from creator_ingest.jobs.job import Completed, Failed, JobOutcome, JobRecord, Retry
from creator_ingest.jobs.payloads import SnapshotPollPayload
from creator_ingest.services.snapshot_collector import PollCompleted, PollFailed, PollOutcome, SnapshotCollector


def to_job_outcome(outcome: PollOutcome) -> JobOutcome:
    if isinstance(outcome, PollCompleted):
        return Completed(outcome.result)
    if isinstance(outcome, PollFailed):
        return Failed(outcome.reason)
    return Retry(outcome.delay_seconds, outcome.reason)


class SnapshotPollProcessor:
    def __init__(self, collector: SnapshotCollector) -> None:
        self.collector = collector

    async def __call__(self, payload: SnapshotPollPayload, job: Optional[JobRecord] = None) -> JobOutcome:
        return to_job_outcome(await self.collector.poll(payload.snapshot_id))


__all__ = ["SnapshotPollProcessor", "to_job_outcome"]
