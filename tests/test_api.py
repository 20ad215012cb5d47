import pytest
from fastapi.testclient import TestClient

from conftest import FakeIngestor, FakeMusicProvider, FakeQuota, FakeStorage, FakeTranscodeProvider
from app.api.deps import get_db, get_ingestor, get_music_provider, get_quota, get_storage
from app.core.config import settings
from app.core.errors import IngestionFailed
from app.main import app
from app.schemas.callback import RemoteOutcome, RemoteStatus
from app.workers.transcode import TranscodeJobManager

OWNER = {"X-Owner-Id": "user-1"}


@pytest.fixture
def services(session_factory):
    provider = FakeMusicProvider()
    ingestor = FakeIngestor()
    quota = FakeQuota()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_music_provider] = lambda: provider
    app.dependency_overrides[get_ingestor] = lambda: ingestor
    app.dependency_overrides[get_quota] = lambda: quota
    app.state.transcode_manager = TranscodeJobManager(FakeTranscodeProvider(), session_factory=session_factory)
    try:
        yield provider, ingestor, quota
    finally:
        app.dependency_overrides.clear()
        del app.state.transcode_manager


@pytest.fixture
def client(services):
    # No context manager: the lifespan would open the configured database
    return TestClient(app)


def submit(client, tags="lofi"):
    response = client.post("/api/v1/jobs", json={"tags": tags, "lyrics": ""}, headers=OWNER)
    assert response.status_code == 202
    return response.json()


def callback(client, task_id, url="https://tmp/a.mp3", **kwargs):
    return client.post(
        "/api/v1/callbacks/generation",
        json={"taskId": task_id, "outcome": "success", "results": [{"url": url}]},
        **kwargs,
    )


def test_submit_and_duplicate(client, services):
    provider, _, quota = services

    created = submit(client)
    duplicate = client.post("/api/v1/jobs", json={"tags": "lofi", "lyrics": ""}, headers=OWNER)

    assert created["state"] == "generating"
    assert created["remote_task_id"] == "task-1"
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["existing_job_id"] == created["job_id"]
    assert len(provider.submitted) == 1
    assert len(quota.commits) == 1


def test_submit_requires_owner(client):
    response = client.post("/api/v1/jobs", json={"tags": "lofi"})

    assert response.status_code == 422


def test_quota_refusal(client, services):
    services[2].allowed = False

    response = client.post("/api/v1/jobs", json={"tags": "lofi"}, headers=OWNER)

    assert response.status_code == 429


def test_status_poll_until_completed(client, services):
    provider, ingestor, _ = services
    job = submit(client)

    pending = client.get(f"/api/v1/jobs/{job['job_id']}/status", headers=OWNER).json()
    assert pending["state"] == "generating"
    assert pending["poll_after_seconds"] == settings.STATUS_POLL_INTERVAL_SECONDS

    provider.statuses["task-1"] = RemoteStatus(outcome=RemoteOutcome.SUCCESS, results=[{"url": "https://tmp/a.mp3"}])
    done = client.get(f"/api/v1/jobs/{job['job_id']}/status", headers=OWNER).json()

    assert done["state"] == "completed"
    assert done["primary_result"]["durable_url"] == f"/files/outputs/tracks/{job['job_id']}/audio.mp3"
    assert done["poll_after_seconds"] is None
    assert len(ingestor.calls) == 1


def test_webhook_completes_and_redelivery_is_noop(client, services):
    _, ingestor, _ = services
    job = submit(client)

    first = callback(client, "task-1")
    second = callback(client, "task-1")

    assert first.status_code == 200
    assert first.json()["state"] == "completed"
    assert second.status_code == 200
    assert len(ingestor.calls) == 1


def test_webhook_asks_for_redelivery_on_ingestion_failure(client, services):
    _, ingestor, _ = services
    job = submit(client)
    ingestor.failures["https://tmp/a.mp3"] = IngestionFailed("cdn 503", retryable=True)

    failed = callback(client, "task-1")
    assert failed.status_code == 503
    assert client.get(f"/api/v1/jobs/{job['job_id']}", headers=OWNER).json()["state"] == "generating"

    ingestor.failures.clear()
    retried = callback(client, "task-1")
    assert retried.status_code == 200
    assert retried.json()["state"] == "completed"


def test_webhook_native_payload(client):
    submit(client)

    response = client.post("/api/v1/callbacks/generation", json={
        "code": 200,
        "msg": "ok",
        "data": {"callbackType": "complete", "task_id": "task-1", "data": [{"audio_url": "https://tmp/a.mp3"}]},
    })

    assert response.status_code == 200
    assert response.json()["state"] == "completed"


def test_webhook_unknown_task(client):
    assert callback(client, "task-404").status_code == 404


def test_webhook_token(client, monkeypatch):
    monkeypatch.setattr(settings, "CALLBACK_TOKEN", "s3cret")
    submit(client)

    assert callback(client, "task-1").status_code == 401
    assert callback(client, "task-1", params={"token": "s3cret"}).status_code == 200


def test_other_owner_cannot_read_job(client):
    job = submit(client)

    response = client.get(f"/api/v1/jobs/{job['job_id']}", headers={"X-Owner-Id": "user-2"})

    assert response.status_code == 404


def test_library_lists_alternate_takes(client):
    job = submit(client)
    client.post("/api/v1/callbacks/generation", json={
        "taskId": "task-1",
        "outcome": "success",
        "results": [{"url": "https://tmp/a.mp3"}, {"url": "https://tmp/b.mp3"}],
    })

    library = client.get("/api/v1/jobs", params={"job_status": "completed"}, headers=OWNER).json()

    assert len(library) == 2
    assert {entry["parent_job_id"] for entry in library} == {None, job["job_id"]}


def test_transcode_requires_completed_job(client):
    job = submit(client)

    response = client.post(f"/api/v1/jobs/{job['job_id']}/transcode", headers=OWNER)

    assert response.status_code == 409


def test_transcode_enqueues_completed_job(client):
    job = submit(client)
    callback(client, "task-1")

    response = client.post(f"/api/v1/jobs/{job['job_id']}/transcode", headers=OWNER)

    assert response.status_code == 202
    assert response.json()["state"] == "pending"
    tracked = client.get("/api/v1/admin/transcode").json()
    assert [t["source_job_id"] for t in tracked] == [job["job_id"]]


def test_admin_timeout(client):
    job = submit(client)

    response = client.post(f"/api/v1/admin/jobs/{job['job_id']}/timeout")

    assert response.status_code == 200
    assert response.json()["state"] == "failed"
    assert response.json()["failure_reason"] == "timed_out"


def test_admin_stale_list(client):
    submit(client)

    assert client.get("/api/v1/admin/jobs/stale").json() == []
    assert len(client.get("/api/v1/admin/jobs/stale", params={"max_age_seconds": -1}).json()) == 1


def test_files_route_serves_stored_artifact(client):
    storage = FakeStorage()
    storage.objects["outputs/tracks/gen_1/audio.mp3"] = (b"ID3audio", "audio/mpeg")
    app.dependency_overrides[get_storage] = lambda: storage

    found = client.get("/files/outputs/tracks/gen_1/audio.mp3")
    missing = client.get("/files/outputs/tracks/gen_2/audio.mp3")

    assert found.status_code == 200
    assert found.content == b"ID3audio"
    assert found.headers["content-type"] == "audio/mpeg"
    assert missing.status_code == 404
