"""Process-wide resources with explicit construction and teardown.

``build_resources()`` wires the job backend, queue manager, event stream,
collectors, snapshot collector and the queue workers. Nothing here is created
at import time: the app lifespan (or a test) builds one ``Resources`` and
calls ``close()`` when done.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.orm import Session

from creator_ingest.config import CREATOR_QUEUE, SNAPSHOT_QUEUE, WORKER_SETTINGS
from creator_ingest.integrations import CollectorRegistry, build_collector_registry
from creator_ingest.integrations.base import AsyncSnapshotProvider
from creator_ingest.jobs.backend import JobBackend, create_job_backend
from creator_ingest.jobs.creator_processor import CreatorCollectionProcessor
from creator_ingest.jobs.manager import JobQueueManager
from creator_ingest.jobs.snapshot_processor import SnapshotPollProcessor
from creator_ingest.jobs.worker import QueueWorker
from creator_ingest.services.content_events import ContentEventStream
from creator_ingest.services.snapshot_collector import SnapshotCollector
from creator_ingest.utils import get_logger

logger = get_logger(__name__)


@dataclass
class Resources:
    session_factory: Callable[[], Session]
    backend: JobBackend
    manager: JobQueueManager
    events: ContentEventStream
    registry: CollectorRegistry
    snapshot_provider: Optional[AsyncSnapshotProvider] = None
    snapshot_collector: Optional[SnapshotCollector] = None
    workers: dict[str, QueueWorker] = field(default_factory=dict)

    def build_workers(self, *, poll_interval: Optional[float] = None) -> dict[str, QueueWorker]:
        """Create (but do not start) workers for the queues this service consumes."""
        interval = float(poll_interval if poll_interval is not None else WORKER_SETTINGS["poll_interval_seconds"])
        processor = CreatorCollectionProcessor(
            self.session_factory,
            self.registry,
            self.manager,
            snapshot_collector=self.snapshot_collector,
            events=self.events,
        )
        self.workers[CREATOR_QUEUE] = QueueWorker(self.manager, CREATOR_QUEUE, processor, poll_interval=interval)
        if self.snapshot_collector is not None:
            self.workers[SNAPSHOT_QUEUE] = QueueWorker(
                self.manager, SNAPSHOT_QUEUE, SnapshotPollProcessor(self.snapshot_collector), poll_interval=interval
            )
        return self.workers

    def start_workers(self) -> None:
        if not self.workers:
            self.build_workers()
        for worker in self.workers.values():
            worker.start()
        logger.info("Queue workers started", queues=sorted(self.workers))

    def close(self, timeout: float = 5.0) -> None:
        for worker in self.workers.values():
            worker.stop(timeout=timeout)
        self.events.close()
        self.backend.close()
        logger.info("Resources closed")


def build_resources(
    session_factory: Optional[Callable[[], Session]] = None,
    *,
    backend: Optional[JobBackend] = None,
    registry: Optional[CollectorRegistry] = None,
) -> Resources:
    if session_factory is None:
        from creator_ingest.database import SessionLocal

        session_factory = SessionLocal
    backend = backend if backend is not None else create_job_backend()
    manager = JobQueueManager(backend)
    events = ContentEventStream()
    registry = registry if registry is not None else build_collector_registry()

    provider = registry.get_async("linkedin")
    collector = SnapshotCollector(session_factory, provider, manager, events=events) if provider is not None else None

    resources = Resources(
        session_factory=session_factory,
        backend=backend,
        manager=manager,
        events=events,
        registry=registry,
        snapshot_provider=provider,
        snapshot_collector=collector,
    )
    logger.info(
        "Resources built",
        backend=backend.name,
        platforms=registry.platforms(),
        snapshot_collector=collector is not None,
    )
    return resources


__all__ = ["Resources", "build_resources"]
