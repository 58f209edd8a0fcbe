import os
import secrets
import sys
from pathlib import Path
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'creator_ingest' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from creator_ingest.main import app  # type: ignore
from creator_ingest.database import Base, enable_sqlite_savepoints  # type: ignore
from creator_ingest.api import deps  # type: ignore
"""Pytest fixtures and factories.

Important: SQLAlchemy relationship configuration requires all model modules to be imported
before Base.metadata.create_all(), otherwise back_populates targets might not exist yet.
"""
from creator_ingest.models.db import Creator, CreatorUrl, CreatorStatus, UrlValidationStatus
from creator_ingest.models.schemas.content import CandidateRecord
from creator_ingest.integrations import CollectorRegistry, FetchOptions, ProviderStatus
from creator_ingest.jobs.backend import MemoryJobBackend
from creator_ingest.jobs.manager import JobQueueManager
from creator_ingest.resources import build_resources

# File-based SQLite so worker threads and the test thread can share it.
# WAL lets a reader and a writer overlap instead of failing with "database is locked".
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_ingest.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False, "timeout": 15},
)


@event.listens_for(engine, "connect")
def _enable_wal(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


enable_sqlite_savepoints(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    for suffix in ("", "-wal", "-shm"):
        try:
            os.remove(f"test_ingest.db{suffix}")
        except OSError:
            pass


@pytest.fixture(autouse=True)
def _isolate_test_state(create_test_db):  # type: ignore[unused-argument]
    """Wipe every table after each test so rows never leak between tests."""
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def session_factory():
    return TestingSessionLocal


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


app.dependency_overrides[deps.get_db] = _override_get_db


# ---------- Clock / queue fixtures ----------

class FakeClock:
    """Manually advanced clock for queue, cache and rate limiter tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def backend():
    backend = MemoryJobBackend()
    yield backend
    backend.purge()


@pytest.fixture()
def manager(backend, clock):
    return JobQueueManager(backend, clock=clock)


@pytest.fixture()
def resources():
    """Provide resources on app.state for endpoints during tests.

    The production app builds these in lifespan. Tests bypass lifespan so we replicate here,
    without starting any worker threads.
    """
    res = build_resources(TestingSessionLocal, backend=MemoryJobBackend(), registry=CollectorRegistry())
    app.state.resources = res  # type: ignore[attr-defined]
    yield res
    res.close(timeout=0)
    app.state.resources = None  # type: ignore[attr-defined]


@pytest.fixture()
def client(resources):
    return TestClient(app)


# ---------- Data factory helpers ----------

@pytest.fixture()
def creator_factory():
    def _create(
        display_name: str = "Test Creator",
        sources: tuple = (),
        status: CreatorStatus = CreatorStatus.ACTIVE,
    ) -> str:
        creator_id = f"creator-{secrets.token_hex(4)}"
        with TestingSessionLocal() as session:
            creator = Creator(id=creator_id, display_name=display_name, status=status)
            for source in sources:
                platform, url = source[0], source[1]
                validation = source[2] if len(source) > 2 else UrlValidationStatus.VALID
                creator.urls.append(CreatorUrl(platform=platform, url=url, validation_status=validation))
            session.add(creator)
            session.commit()
        return creator_id
    return _create


@pytest.fixture()
def make_candidate():
    def _create(content_id: str = "post-1", platform: str = "rss", **overrides) -> CandidateRecord:
        data = {
            "platform": platform,
            "platform_content_id": content_id,
            "url": f"https://example.com/{platform}/{content_id}",
            "title": f"Post {content_id}",
            "content_body": "Some body text for the post",
        }
        data.update(overrides)
        return CandidateRecord(**data)
    return _create


class FakeCollector:
    """Sync collector double: returns canned records or raises a canned error."""

    def __init__(self, platform_name: str, records: Optional[list] = None, error: Optional[Exception] = None):
        self.platform_name = platform_name
        self.records = list(records or [])
        self.error = error
        self.calls: list[tuple[str, FetchOptions]] = []

    async def fetch(self, source_url: str, options: FetchOptions) -> list[CandidateRecord]:
        self.calls.append((source_url, options))
        if self.error is not None:
            raise self.error
        return list(self.records)


class FakeSnapshotProvider:
    """Async provider double. ``statuses`` is consumed one per poll; items may be exceptions."""

    platform_name = "linkedin"
    dataset_id = "ds_test"

    def __init__(self, statuses: Optional[list] = None, records: Optional[list] = None, snapshot_id: str = "snap-1"):
        self.statuses = list(statuses or [])
        self.records = list(records or [])
        self.snapshot_id = snapshot_id
        self.triggered: list[list[str]] = []
        self.polls = 0
        self.downloads = 0

    async def trigger_async(self, source_urls: list[str]) -> str:
        self.triggered.append(list(source_urls))
        return self.snapshot_id

    async def poll_status(self, snapshot_id: str) -> ProviderStatus:
        self.polls += 1
        item = self.statuses.pop(0) if self.statuses else ProviderStatus(status="ready", result_count=len(self.records))
        if isinstance(item, Exception):
            raise item
        return item

    async def download(self, snapshot_id: str) -> list[CandidateRecord]:
        self.downloads += 1
        return list(self.records)


@pytest.fixture()
def make_collector():
    return FakeCollector


@pytest.fixture()
def make_provider():
    return FakeSnapshotProvider
