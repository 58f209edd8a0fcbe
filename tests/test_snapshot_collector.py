import asyncio

import pytest

from creator_ingest.config import SNAPSHOT_QUEUE, SUMMARY_QUEUE
from creator_ingest.integrations import CollectorError, ProviderAuthError, ProviderStatus, TransientProviderError
from creator_ingest.jobs.job import Completed, Failed, JobState, QueueUnavailableError, Retry
from creator_ingest.jobs.snapshot_processor import SnapshotPollProcessor, to_job_outcome
from creator_ingest.jobs.worker import QueueWorker
from creator_ingest.models.db import ContentItem, Snapshot, SnapshotStatus
from creator_ingest.services.snapshot_collector import PollCompleted, PollFailed, PollRetry, SnapshotCollector
from creator_ingest.utils.ratelimiter import WindowRateLimiter

RUNNING = ProviderStatus(status="running")


def _snapshot(session_factory, snapshot_id="snap-1"):
    with session_factory() as session:
        snap = session.get(Snapshot, snapshot_id)
        session.expunge_all()
        return snap


def _collector(session_factory, provider, manager, **kwargs):
    kwargs.setdefault("max_poll_attempts", 10)
    kwargs.setdefault("initial_poll_delay", 60)
    return SnapshotCollector(session_factory, provider, manager, **kwargs)


def _linkedin_posts(make_candidate, n=2):
    return [make_candidate(f"urn:li:{i}", platform="linkedin") for i in range(n)]


def test_trigger_persists_pending_snapshot_and_schedules_poll(session_factory, manager, creator_factory, make_provider):
    creator_id = creator_factory()
    provider = make_provider()
    collector = _collector(session_factory, provider, manager)

    snapshot_id = asyncio.run(collector.trigger(creator_id, ["https://www.linkedin.com/in/someone"]))

    assert snapshot_id == "snap-1"
    assert provider.triggered == [["https://www.linkedin.com/in/someone"]]
    snap = _snapshot(session_factory)
    assert snap.status == SnapshotStatus.PENDING
    assert snap.poll_attempts == 0
    assert snap.creator_id == creator_id
    assert snap.dataset_id == "ds_test"
    assert snap.source_urls == ["https://www.linkedin.com/in/someone"]

    job = manager.get_job(SNAPSHOT_QUEUE, "snapshot:snap-1")
    assert job.state == JobState.DELAYED
    assert job.delay_seconds == 60
    assert job.payload["creator_id"] == creator_id


def test_trigger_keeps_row_when_queue_unavailable(session_factory, manager, creator_factory, make_provider, monkeypatch):
    creator_id = creator_factory()
    collector = _collector(session_factory, make_provider(), manager)

    def unavailable(*args, **kwargs):
        raise QueueUnavailableError("redis down")

    monkeypatch.setattr(manager, "enqueue_snapshot_poll", unavailable)
    with pytest.raises(QueueUnavailableError):
        asyncio.run(collector.trigger(creator_id, ["https://www.linkedin.com/in/someone"]))
    assert _snapshot(session_factory).status == SnapshotStatus.PENDING


def test_three_running_polls_then_ready_is_processed(session_factory, manager, creator_factory, make_provider, make_candidate):
    creator_id = creator_factory()
    provider = make_provider(statuses=[RUNNING, RUNNING, RUNNING], records=_linkedin_posts(make_candidate))
    collector = _collector(session_factory, provider, manager)
    asyncio.run(collector.trigger(creator_id, ["https://www.linkedin.com/in/someone"]))

    delays = []
    for _ in range(3):
        outcome = asyncio.run(collector.poll("snap-1"))
        assert isinstance(outcome, PollRetry)
        delays.append(outcome.delay_seconds)
    assert delays == [30, 60, 120]
    assert _snapshot(session_factory).status == SnapshotStatus.PENDING

    outcome = asyncio.run(collector.poll("snap-1"))
    assert isinstance(outcome, PollCompleted)
    assert outcome.result["created"] == 2
    assert outcome.result["posts_retrieved"] == 2
    assert outcome.result["poll_attempts"] == 4

    snap = _snapshot(session_factory)
    assert snap.status == SnapshotStatus.PROCESSED
    assert snap.processed_at is not None
    assert snap.created_count == 2
    assert snap.provider_metadata["result_count"] == 2

    with session_factory() as session:
        rows = session.query(ContentItem).filter_by(creator_id=creator_id).all()
        assert sorted(r.platform_content_id for r in rows) == ["urn:li:0", "urn:li:1"]

    summary = manager.claim(SUMMARY_QUEUE)
    assert summary is not None
    assert summary.payload["creator_id"] == creator_id
    assert len(summary.payload["content_ids"]) == 2


def test_poll_attempt_limit_marks_snapshot_failed(session_factory, manager, creator_factory, make_provider):
    creator_id = creator_factory()
    provider = make_provider(statuses=[RUNNING] * 4)
    collector = _collector(session_factory, provider, manager, max_poll_attempts=4)
    asyncio.run(collector.trigger(creator_id, ["https://www.linkedin.com/in/someone"]))

    for _ in range(3):
        assert isinstance(asyncio.run(collector.poll("snap-1")), PollRetry)
    after_third = _snapshot(session_factory)
    assert after_third.status == SnapshotStatus.PENDING
    assert after_third.poll_attempts == 3

    outcome = asyncio.run(collector.poll("snap-1"))
    assert isinstance(outcome, PollFailed)
    assert "Timed out" in outcome.reason
    snap = _snapshot(session_factory)
    assert snap.status == SnapshotStatus.FAILED
    assert snap.error_code == "timeout"
    assert snap.poll_attempts == 4
    assert provider.downloads == 0


def test_provider_reported_failure(session_factory, manager, creator_factory, make_provider):
    creator_id = creator_factory()
    provider = make_provider(statuses=[ProviderStatus(status="failed", error="quota exceeded", error_code="quota")])
    collector = _collector(session_factory, provider, manager)
    asyncio.run(collector.trigger(creator_id, ["https://www.linkedin.com/in/someone"]))

    outcome = asyncio.run(collector.poll("snap-1"))
    assert outcome == PollFailed("quota exceeded")
    snap = _snapshot(session_factory)
    assert snap.status == SnapshotStatus.FAILED
    assert snap.error_code == "quota"


def test_transient_provider_error_is_retried(session_factory, manager, creator_factory, make_provider, make_candidate):
    creator_id = creator_factory()
    provider = make_provider(statuses=[TransientProviderError("HTTP 502")], records=_linkedin_posts(make_candidate, 1))
    collector = _collector(session_factory, provider, manager)
    asyncio.run(collector.trigger(creator_id, ["https://www.linkedin.com/in/someone"]))

    outcome = asyncio.run(collector.poll("snap-1"))
    assert isinstance(outcome, PollRetry)
    assert "HTTP 502" in outcome.reason
    assert _snapshot(session_factory).status == SnapshotStatus.PENDING

    assert isinstance(asyncio.run(collector.poll("snap-1")), PollCompleted)


def test_permanent_provider_error_fails_snapshot(session_factory, manager, creator_factory, make_provider):
    creator_id = creator_factory()
    provider = make_provider(statuses=[ProviderAuthError("bad key", status=401)])
    collector = _collector(session_factory, provider, manager)
    asyncio.run(collector.trigger(creator_id, ["https://www.linkedin.com/in/someone"]))

    outcome = asyncio.run(collector.poll("snap-1"))
    assert isinstance(outcome, PollFailed)
    snap = _snapshot(session_factory)
    assert snap.status == SnapshotStatus.FAILED
    assert snap.error == "bad key"
    assert snap.error_code == "ProviderAuthError"


def test_client_error_fails_snapshot_without_polling_again(session_factory, manager, creator_factory, make_provider):
    creator_id = creator_factory()
    provider = make_provider(statuses=[CollectorError("bad request", status=400)])
    collector = _collector(session_factory, provider, manager)
    asyncio.run(collector.trigger(creator_id, ["https://www.linkedin.com/in/someone"]))

    outcome = asyncio.run(collector.poll("snap-1"))
    assert isinstance(outcome, PollFailed)
    snap = _snapshot(session_factory)
    assert snap.status == SnapshotStatus.FAILED
    assert snap.poll_attempts == 1
    assert snap.error_code == "CollectorError"


def test_unknown_snapshot_fails(session_factory, manager, make_provider):
    outcome = asyncio.run(_collector(session_factory, make_provider(), manager).poll("missing"))
    assert isinstance(outcome, PollFailed)
    assert "not found" in outcome.reason


def test_terminal_snapshot_polls_are_idempotent(session_factory, manager, creator_factory, make_provider, make_candidate):
    creator_id = creator_factory()
    provider = make_provider(records=_linkedin_posts(make_candidate))
    collector = _collector(session_factory, provider, manager)
    asyncio.run(collector.trigger(creator_id, ["https://www.linkedin.com/in/someone"]))

    first = asyncio.run(collector.poll("snap-1"))
    second = asyncio.run(collector.poll("snap-1"))

    assert isinstance(second, PollCompleted)
    assert second.result["created"] == first.result["created"] == 2
    assert provider.polls == 1
    assert provider.downloads == 1
    assert _snapshot(session_factory).poll_attempts == 1


def test_requeue_pending_only_fills_gaps(session_factory, manager, make_provider):
    with session_factory() as session:
        session.add_all([
            Snapshot(snapshot_id="s-queued", creator_id="c1", source_urls=[], status=SnapshotStatus.PENDING),
            Snapshot(snapshot_id="s-orphan", creator_id="c1", source_urls=[], status=SnapshotStatus.PROCESSING),
            Snapshot(snapshot_id="s-done", creator_id="c1", source_urls=[], status=SnapshotStatus.PROCESSED),
        ])
        session.commit()
    manager.enqueue_snapshot_poll("s-queued", "c1", delay_seconds=60)

    summary = _collector(session_factory, make_provider(), manager).requeue_pending()

    assert summary == {"checked": 2, "queued": 1, "already_queued": 1}
    assert manager.get_job(SNAPSHOT_QUEUE, "snapshot:s-orphan").state == JobState.WAITING
    assert manager.get_job(SNAPSHOT_QUEUE, "snapshot:s-done") is None


def test_list_snapshots_filters_by_status(session_factory, manager, make_provider):
    with session_factory() as session:
        session.add_all([
            Snapshot(snapshot_id="s1", creator_id="c1", source_urls=[], status=SnapshotStatus.PENDING),
            Snapshot(snapshot_id="s2", creator_id="c1", source_urls=[], status=SnapshotStatus.FAILED),
        ])
        session.commit()
    collector = _collector(session_factory, make_provider(), manager)
    assert [s.snapshot_id for s in collector.list_snapshots(status=SnapshotStatus.FAILED)] == ["s2"]
    assert len(collector.list_snapshots()) == 2


def test_poll_outcomes_map_to_job_outcomes():
    assert to_job_outcome(PollCompleted({"a": 1})) == Completed({"a": 1})
    assert to_job_outcome(PollFailed("nope")) == Failed("nope")
    assert to_job_outcome(PollRetry(30, "running")) == Retry(30, "running")


def test_poll_job_runs_through_worker(session_factory, manager, clock, creator_factory, make_provider, make_candidate):
    creator_id = creator_factory()
    provider = make_provider(statuses=[RUNNING], records=_linkedin_posts(make_candidate, 1))
    collector = _collector(session_factory, provider, manager)
    worker = QueueWorker(
        manager,
        SNAPSHOT_QUEUE,
        SnapshotPollProcessor(collector),
        rate_limiter=WindowRateLimiter(100, 1.0),
    )
    asyncio.run(collector.trigger(creator_id, ["https://www.linkedin.com/in/someone"]))

    assert worker.run_once() is False
    clock.advance(60)
    assert worker.run_once() is True
    job = manager.get_job(SNAPSHOT_QUEUE, "snapshot:snap-1")
    assert job.state == JobState.DELAYED
    assert job.ready_at == pytest.approx(clock() + 30)

    clock.advance(30)
    assert worker.run_once() is True
    job = manager.get_job(SNAPSHOT_QUEUE, "snapshot:snap-1")
    assert job.state == JobState.COMPLETED
    assert job.result["created"] == 1
    assert _snapshot(session_factory).status == SnapshotStatus.PROCESSED
