"""Test configuration and fixtures."""

import asyncio
import io

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.core.errors import TranscodeProviderError
from app.models import GenerationJob, UsageRecord  # noqa: F401
from app.schemas.callback import RemoteOutcome, RemoteStatus
from app.services.quota import QuotaDecision
from app.services.reconciler import GenerationReconciler


# Force anyio to use asyncio
@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class FakeMusicProvider:
    """Remote generation client that hands out task-1, task-2, ..."""

    def __init__(self):
        self.submitted = []
        self.status_calls = []
        self.statuses = {}
        self.submit_error = None

    async def submit(self, params):
        self.submitted.append(params)
        if self.submit_error:
            raise self.submit_error
        return f"task-{len(self.submitted)}"

    async def get_status(self, task_id):
        self.status_calls.append(task_id)
        result = self.statuses.get(task_id, RemoteStatus(outcome=RemoteOutcome.IN_PROGRESS))
        if isinstance(result, Exception):
            raise result
        return result


class FakeIngestor:
    """
    Records every ingestion; ``failures`` maps a source URL to the error to raise.

    ``delay`` makes each ingestion sleep, and ``max_in_flight`` records the
    most ingestions ever running at once.
    """

    def __init__(self, delay=0):
        self.calls = []
        self.failures = {}
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def ingest(self, source_url, destination_key):
        self.calls.append((source_url, destination_key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            error = self.failures.get(source_url)
            if error:
                raise error
            return f"/files/{destination_key}"
        finally:
            self.in_flight -= 1


class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.fail_with = None

    async def upload_bytes(self, data, path, content_type="application/octet-stream"):
        if self.fail_with:
            raise self.fail_with
        self.objects[path] = (data, content_type)
        return f"/files/{path}"

    async def read(self, ref):
        path = ref[len("/files/"):] if ref.startswith("/files/") else ref
        return io.BytesIO(self.objects[path][0])


class FakeQuota:
    def __init__(self, allowed=True):
        self.allowed = allowed
        self.commits = []

    def try_consume(self, owner_id):
        if self.allowed:
            return QuotaDecision(allowed=True)
        return QuotaDecision(allowed=False, reason="limit reached", remaining=0)

    def commit(self, owner_id, job_id):
        self.commits.append((owner_id, job_id))
        return True


class FakeTranscodeProvider:
    """
    Transcode provider double.

    ``create_errors`` is consumed one error per ``create_asset`` call;
    ``asset_states`` maps asset id to the status ``get_asset_status`` reports.
    """

    def __init__(self, configured=True):
        self.is_configured = configured
        self.created = []
        self.create_errors = []
        self.asset_states = {}
        self.always_fail_for = set()

    async def create_asset(self, url):
        if url in self.always_fail_for:
            raise TranscodeProviderError(f"cannot fetch {url}", retryable=True)
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.created.append(url)
        asset_id = f"asset-{len(self.created)}"
        self.asset_states.setdefault(asset_id, "preparing")
        return {"asset_id": asset_id, "playback_id": f"play-{len(self.created)}", "status": "preparing"}

    async def get_asset_status(self, asset_id):
        state = self.asset_states.get(asset_id, "preparing")
        return {
            "asset_id": asset_id,
            "status": state,
            "playback_id": asset_id.replace("asset", "play"),
            "errors": ["input unreadable"] if state == "errored" else [],
        }


@pytest.fixture
def provider():
    return FakeMusicProvider()


@pytest.fixture
def ingestor():
    return FakeIngestor()


@pytest.fixture
def quota():
    return FakeQuota()


@pytest.fixture
def reconciler(db_session, provider, ingestor, quota):
    return GenerationReconciler(
        db_session,
        provider,
        ingestor,
        quota=quota,
        duplicate_window_seconds=10,
        lease_seconds=120,
    )


def success(*urls, previews=None):
    """Successful remote status with one result per URL."""
    previews = previews or {}
    return RemoteStatus(
        outcome=RemoteOutcome.SUCCESS,
        results=[{"url": url, "previewUrl": previews.get(url), "title": f"Take {i}"} for i, url in enumerate(urls)],
    )


class FlakySessionFactory:
    """Session factory whose first ``failures`` calls raise like a locked database."""

    def __init__(self, session_factory, failures=1):
        self.session_factory = session_factory
        self.failures = failures

    def __call__(self):
        if self.failures:
            self.failures -= 1
            raise OperationalError("UPDATE generation_jobs", {}, Exception("database is locked"))
        return self.session_factory()
