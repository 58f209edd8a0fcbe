"""Creator collection job handler.

For one creator: walk every registered source, collect through the matching
platform collector, tag the records with the creator id and reconcile them
through the content store. Sources are isolated from each other: a failing
source is recorded in the stats and the remaining sources still run. Slow
async providers are not awaited here; they get a snapshot triggered and are
finished later by the snapshot poll job.

No database session is held open across a network call: sources are read up
front, each batch is stored in its own short-lived session, and run metadata
is written at the end.
"""
from __future__ import annotations

import time
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from creator_ingest.config import COLLECTOR_SETTINGS, SUMMARY_SETTINGS
from creator_ingest.integrations import CollectorRegistry, FetchOptions, is_rate_limited
from creator_ingest.jobs.job import Completed, JobRecord, PermanentJobError, QueueUnavailableError
from creator_ingest.jobs.manager import JobQueueManager
from creator_ingest.jobs.payloads import CreatorCollectionPayload
from creator_ingest.services.content_events import ContentEventStream
from creator_ingest.services.content_store import ContentStore, ReconciliationResult
from creator_ingest.services.creator_directory import CreatorDirectory, CreatorNotFoundError, SourceUrl
from creator_ingest.services.snapshot_collector import SnapshotCollector
from creator_ingest.utils import get_logger, log_business_event, log_performance

logger = get_logger(__name__)


def _stats_key(platforms: dict, platform: str) -> str:
    if platform not in platforms:
        return platform
    n = 2
    while f"{platform}#{n}" in platforms:
        n += 1
    return f"{platform}#{n}"


class CreatorCollectionProcessor:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: CollectorRegistry,
        manager: JobQueueManager,
        *,
        snapshot_collector: Optional[SnapshotCollector] = None,
        events: Optional[ContentEventStream] = None,
        max_results: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.manager = manager
        self.snapshot_collector = snapshot_collector
        self.events = events
        self.max_results = int(max_results if max_results is not None else COLLECTOR_SETTINGS["max_results"])

    async def __call__(self, payload: CreatorCollectionPayload, job: Optional[JobRecord] = None) -> Completed:
        return await self.process(payload)

    def _load_sources(self, creator_id: str) -> list[SourceUrl]:
        with self.session_factory() as session:
            directory = CreatorDirectory(session)
            try:
                directory.get_creator(creator_id)
            except CreatorNotFoundError as e:
                raise PermanentJobError(str(e)) from e
            return directory.list_sources(creator_id)

    def _store(self, creator_id: str, records: list) -> ReconciliationResult:
        with self.session_factory() as session:
            return ContentStore(session, events=self.events).store_batch([r.with_creator(creator_id) for r in records])

    def _record_run(self, creator_id: str, stats: dict[str, Any]) -> None:
        with self.session_factory() as session:
            CreatorDirectory(session).record_run(creator_id, stats)

    async def _trigger_snapshot(self, creator_id: str, source: SourceUrl, key: str, stats: dict[str, Any]) -> None:
        try:
            snapshot_id = await self.snapshot_collector.trigger(creator_id, [source.url])
        except Exception as e:
            stats["platforms"][key] = {"error": str(e)}
            stats["errors"] += 1
            logger.warning(
                "Snapshot trigger failed",
                creator_id=creator_id,
                platform=source.platform,
                url=source.url,
                error=str(e),
                rate_limited=is_rate_limited(e),
            )
            return
        stats["platforms"][key] = {"snapshot_id": snapshot_id, "fetched": 0}
        stats["snapshots"].append(snapshot_id)

    async def process(self, payload: CreatorCollectionPayload) -> Completed:
        started = time.perf_counter()
        creator_id = payload.creator_id
        stats: dict[str, Any] = {
            "processed": 0,
            "new": 0,
            "updated": 0,
            "skipped": 0,
            "errors": 0,
            "platforms": {},
            "snapshots": [],
        }
        created_ids: list[str] = []

        sources = self._load_sources(creator_id)
        logger.info("Collecting creator content", creator_id=creator_id, creator_name=payload.creator_name, sources=len(sources))

        for source in sources:
            key = _stats_key(stats["platforms"], source.platform)

            if self.registry.is_async(source.platform):
                if payload.skip_slow_platform or self.snapshot_collector is None:
                    stats["platforms"][key] = {"skipped": True}
                else:
                    await self._trigger_snapshot(creator_id, source, key, stats)
                continue

            collector = self.registry.get(source.platform)
            if collector is None:
                logger.debug("No collector for platform", creator_id=creator_id, platform=source.platform)
                continue

            try:
                records = await collector.fetch(source.url, FetchOptions(max_results=self.max_results))
                result = self._store(creator_id, records)
            except Exception as e:
                stats["platforms"][key] = {"error": str(e)}
                stats["errors"] += 1
                logger.warning(
                    "Source collection failed",
                    creator_id=creator_id,
                    platform=source.platform,
                    url=source.url,
                    error=str(e),
                    rate_limited=is_rate_limited(e),
                )
                continue

            stats["platforms"][key] = {
                "fetched": len(records),
                "new": result.created,
                "updated": result.updated,
                "skipped": result.skipped,
                "errors": len(result.errors),
            }
            stats["processed"] += len(records)
            stats["new"] += result.created
            stats["updated"] += result.updated
            stats["skipped"] += result.skipped
            stats["errors"] += len(result.errors)
            created_ids.extend(result.created_ids)

        self._record_run(creator_id, stats)

        if stats["new"] > 0 and SUMMARY_SETTINGS.get("enabled", True):
            try:
                self.manager.enqueue_summarization(created_ids, creator_id)
            except QueueUnavailableError as e:
                logger.error("Summarization enqueue failed", creator_id=creator_id, error=str(e))

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        log_performance("creator_collection", duration_ms, {"creator_id": creator_id, "sources": len(sources)})
        log_business_event(
            "creator_collected",
            {k: stats[k] for k in ("processed", "new", "updated", "skipped", "errors")},
            creator_id=creator_id,
        )
        return Completed(stats)


__all__ = ["CreatorCollectionProcessor"]
