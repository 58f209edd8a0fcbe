import asyncio

import pytest

from creator_ingest.config import CREATOR_QUEUE, SNAPSHOT_QUEUE, SUMMARY_QUEUE
from creator_ingest.integrations import CollectorRegistry, RateLimitedError, TransientProviderError
from creator_ingest.jobs.creator_processor import CreatorCollectionProcessor
from creator_ingest.jobs.job import JobState, PermanentJobError
from creator_ingest.jobs.payloads import CreatorCollectionPayload
from creator_ingest.jobs.worker import QueueWorker
from creator_ingest.models.db import Creator, ContentItem, UrlValidationStatus
from creator_ingest.services.snapshot_collector import SnapshotCollector
from creator_ingest.utils.ratelimiter import WindowRateLimiter


def _run(processor, creator_id, **kwargs):
    return asyncio.run(processor.process(CreatorCollectionPayload(creator_id=creator_id, **kwargs))).result


def test_one_failing_source_does_not_stop_the_others(session_factory, manager, creator_factory, make_collector, make_candidate):
    creator_id = creator_factory(sources=[
        ("youtube", "https://www.youtube.com/@someone"),
        ("rss", "https://someone.blog/feed"),
        ("tiktok", "https://www.tiktok.com/@someone"),
    ])
    registry = CollectorRegistry()
    registry.register("youtube", make_collector("youtube", error=TransientProviderError("youtube upstream error HTTP 503")))
    rss = make_collector("rss", records=[make_candidate("a"), make_candidate("b")])
    registry.register("rss", rss)
    processor = CreatorCollectionProcessor(session_factory, registry, manager)

    stats = _run(processor, creator_id)

    assert stats["new"] == 2
    assert stats["processed"] == 2
    assert stats["errors"] == 1
    assert "HTTP 503" in stats["platforms"]["youtube"]["error"]
    assert stats["platforms"]["rss"] == {"fetched": 2, "new": 2, "updated": 0, "skipped": 0, "errors": 0}
    assert "tiktok" not in stats["platforms"]
    assert rss.calls[0][0] == "https://someone.blog/feed"

    with session_factory() as session:
        rows = session.query(ContentItem).filter_by(creator_id=creator_id).all()
        assert {r.platform_content_id for r in rows} == {"a", "b"}


def test_new_content_chains_summarization_once(session_factory, manager, creator_factory, make_collector, make_candidate):
    creator_id = creator_factory(sources=[("rss", "https://someone.blog/feed")])
    registry = CollectorRegistry()
    registry.register("rss", make_collector("rss", records=[make_candidate("a"), make_candidate("b")]))
    processor = CreatorCollectionProcessor(session_factory, registry, manager)

    _run(processor, creator_id)
    job = manager.claim(SUMMARY_QUEUE)
    assert job.priority == "high"
    assert job.payload["creator_id"] == creator_id
    assert len(job.payload["content_ids"]) == 2

    stats = _run(processor, creator_id)
    assert stats["new"] == 0
    assert stats["skipped"] == 2
    assert manager.claim(SUMMARY_QUEUE) is None


def test_run_metadata_recorded_on_creator(session_factory, manager, creator_factory, make_collector, make_candidate):
    creator_id = creator_factory(sources=[("rss", "https://someone.blog/feed")])
    registry = CollectorRegistry()
    registry.register("rss", make_collector("rss", records=[make_candidate("a")]))
    _run(CreatorCollectionProcessor(session_factory, registry, manager), creator_id)

    with session_factory() as session:
        metadata = session.get(Creator, creator_id).creator_metadata
    assert metadata["last_fetch_stats"]["new"] == 1
    assert metadata["last_fetched_at"]


def test_invalid_sources_are_ignored(session_factory, manager, creator_factory, make_collector, make_candidate):
    creator_id = creator_factory(sources=[
        ("rss", "https://gone.example/feed", UrlValidationStatus.INVALID),
        ("RSS", "https://someone.blog/feed"),
    ])
    rss = make_collector("rss", records=[make_candidate("a")])
    registry = CollectorRegistry()
    registry.register("rss", rss)
    _run(CreatorCollectionProcessor(session_factory, registry, manager), creator_id)
    assert [call[0] for call in rss.calls] == ["https://someone.blog/feed"]


def test_repeated_platform_sources_get_distinct_stats_keys(session_factory, manager, creator_factory, make_collector, make_candidate):
    creator_id = creator_factory(sources=[
        ("rss", "https://one.blog/feed"),
        ("rss", "https://two.blog/feed"),
    ])
    registry = CollectorRegistry()
    registry.register("rss", make_collector("rss", records=[make_candidate("a")]))
    stats = _run(CreatorCollectionProcessor(session_factory, registry, manager), creator_id)
    assert set(stats["platforms"]) == {"rss", "rss#2"}
    assert stats["platforms"]["rss#2"]["skipped"] == 1


def test_missing_creator_is_permanent(session_factory, manager):
    processor = CreatorCollectionProcessor(session_factory, CollectorRegistry(), manager)
    with pytest.raises(PermanentJobError):
        asyncio.run(processor.process(CreatorCollectionPayload(creator_id="nobody")))


def test_missing_creator_job_fails_without_retry(session_factory, manager):
    processor = CreatorCollectionProcessor(session_factory, CollectorRegistry(), manager)
    worker = QueueWorker(manager, CREATOR_QUEUE, processor, rate_limiter=WindowRateLimiter(100, 1.0))
    manager.enqueue(CREATOR_QUEUE, CreatorCollectionPayload(creator_id="nobody"))

    worker.run_once()

    job = manager.get_job(CREATOR_QUEUE, "creator:nobody")
    assert job.state == JobState.FAILED
    assert job.attempts_made == 1
    assert "not found" in job.last_error


def test_rate_limited_source_recorded_as_error(session_factory, manager, creator_factory, make_collector):
    creator_id = creator_factory(sources=[("twitter", "https://x.com/someone")])
    registry = CollectorRegistry()
    registry.register("twitter", make_collector("twitter", error=RateLimitedError("twitter rate limit exceeded (HTTP 429)")))
    stats = _run(CreatorCollectionProcessor(session_factory, registry, manager), creator_id)
    assert stats["errors"] == 1
    assert "rate limit" in stats["platforms"]["twitter"]["error"]


def test_async_platform_triggers_snapshot(session_factory, manager, creator_factory, make_provider):
    creator_id = creator_factory(sources=[("linkedin", "https://www.linkedin.com/in/someone")])
    provider = make_provider()
    registry = CollectorRegistry()
    registry.register_async("linkedin", provider)
    collector = SnapshotCollector(session_factory, provider, manager, initial_poll_delay=60)
    processor = CreatorCollectionProcessor(session_factory, registry, manager, snapshot_collector=collector)

    stats = _run(processor, creator_id)

    assert stats["snapshots"] == ["snap-1"]
    assert stats["platforms"]["linkedin"] == {"snapshot_id": "snap-1", "fetched": 0}
    assert provider.triggered == [["https://www.linkedin.com/in/someone"]]
    assert provider.polls == 0
    assert manager.get_job(SNAPSHOT_QUEUE, "snapshot:snap-1").state == JobState.DELAYED


def test_skip_slow_platform_leaves_async_sources_alone(session_factory, manager, creator_factory, make_provider, make_collector, make_candidate):
    creator_id = creator_factory(sources=[
        ("linkedin", "https://www.linkedin.com/in/someone"),
        ("rss", "https://someone.blog/feed"),
    ])
    provider = make_provider()
    registry = CollectorRegistry()
    registry.register_async("linkedin", provider)
    registry.register("rss", make_collector("rss", records=[make_candidate("a")]))
    collector = SnapshotCollector(session_factory, provider, manager)
    processor = CreatorCollectionProcessor(session_factory, registry, manager, snapshot_collector=collector)

    stats = _run(processor, creator_id, skip_slow_platform=True)

    assert stats["platforms"]["linkedin"] == {"skipped": True}
    assert stats["platforms"]["rss"]["new"] == 1
    assert stats["snapshots"] == []
    assert provider.triggered == []
    assert manager.get_job(SNAPSHOT_QUEUE, "snapshot:snap-1") is None


def test_collection_job_runs_through_worker(session_factory, manager, creator_factory, make_collector, make_candidate):
    creator_id = creator_factory(sources=[("rss", "https://someone.blog/feed")])
    registry = CollectorRegistry()
    registry.register("rss", make_collector("rss", records=[make_candidate("a")]))
    processor = CreatorCollectionProcessor(session_factory, registry, manager)
    worker = QueueWorker(manager, CREATOR_QUEUE, processor, rate_limiter=WindowRateLimiter(100, 1.0))
    manager.enqueue_creators([type("C", (), {"id": creator_id, "display_name": "Someone"})()], stagger_seconds=0)

    assert worker.run_once() is True

    job = manager.get_job(CREATOR_QUEUE, f"creator:{creator_id}")
    assert job.state == JobState.COMPLETED
    assert job.result["new"] == 1
    assert job.result["platforms"]["rss"]["fetched"] == 1
