import httpx
import pytest

from conftest import FakeStorage
from app.core.errors import ArtifactTooLarge, IngestionFailed
from app.services.ingestion import ArtifactIngestor, guess_content_type, guess_extension


def make_ingestor(handler, storage=None, max_bytes=1024):
    return ArtifactIngestor(
        storage or FakeStorage(),
        max_bytes=max_bytes,
        timeout=5,
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.anyio
async def test_ingest_stores_full_payload():
    storage = FakeStorage()

    def handler(request):
        return httpx.Response(200, content=b"ID3audio", headers={"content-type": "audio/mpeg"})

    ref = await make_ingestor(handler, storage).ingest("https://tmp/a.mp3", "outputs/tracks/gen_1/audio.mp3")

    assert ref == "/files/outputs/tracks/gen_1/audio.mp3"
    assert storage.objects["outputs/tracks/gen_1/audio.mp3"] == (b"ID3audio", "audio/mpeg")


@pytest.mark.anyio
async def test_missing_content_type_is_guessed_from_url():
    storage = FakeStorage()

    def handler(request):
        return httpx.Response(200, content=b"png", headers={"content-type": "application/octet-stream"})

    await make_ingestor(handler, storage).ingest("https://tmp/cover.png?sig=1", "cover.png")

    assert storage.objects["cover.png"][1] == "image/png"


@pytest.mark.anyio
async def test_not_found_is_permanent():
    storage = FakeStorage()

    with pytest.raises(IngestionFailed) as exc:
        await make_ingestor(lambda r: httpx.Response(404), storage).ingest("https://tmp/a.mp3", "a.mp3")

    assert exc.value.retryable is False
    assert exc.value.details["status_code"] == 404
    assert storage.objects == {}


@pytest.mark.parametrize("status_code", [500, 503, 429])
@pytest.mark.anyio
async def test_server_errors_are_retryable(status_code):
    with pytest.raises(IngestionFailed) as exc:
        await make_ingestor(lambda r: httpx.Response(status_code)).ingest("https://tmp/a.mp3", "a.mp3")

    assert exc.value.retryable is True


@pytest.mark.anyio
async def test_timeout_is_retryable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(IngestionFailed) as exc:
        await make_ingestor(handler).ingest("https://tmp/a.mp3", "a.mp3")

    assert exc.value.retryable is True


@pytest.mark.anyio
async def test_declared_size_over_limit():
    storage = FakeStorage()

    with pytest.raises(ArtifactTooLarge):
        await make_ingestor(lambda r: httpx.Response(200, content=b"x" * 2048), storage).ingest(
            "https://tmp/a.mp3", "a.mp3"
        )

    assert storage.objects == {}


@pytest.mark.anyio
async def test_streamed_size_over_limit():
    storage = FakeStorage()

    async def chunks():
        for _ in range(4):
            yield b"x" * 512

    with pytest.raises(ArtifactTooLarge):
        await make_ingestor(lambda r: httpx.Response(200, content=chunks()), storage).ingest(
            "https://tmp/a.mp3", "a.mp3"
        )

    assert storage.objects == {}


@pytest.mark.anyio
async def test_empty_body_is_retryable():
    with pytest.raises(IngestionFailed) as exc:
        await make_ingestor(lambda r: httpx.Response(200, content=b"")).ingest("https://tmp/a.mp3", "a.mp3")

    assert exc.value.retryable is True


@pytest.mark.anyio
async def test_upload_failure_is_retryable():
    storage = FakeStorage()
    storage.fail_with = OSError("disk full")

    with pytest.raises(IngestionFailed) as exc:
        await make_ingestor(lambda r: httpx.Response(200, content=b"abc"), storage).ingest("https://tmp/a.mp3", "a.mp3")

    assert exc.value.retryable is True
    assert exc.value.details["destination_key"] == "a.mp3"


def test_guess_extension():
    assert guess_extension("https://cdn/x/track.MP3?sig=abc") == ".mp3"
    assert guess_extension("https://cdn/x/track", ".mp3") == ".mp3"
    assert guess_extension("https://cdn/x/track.not-an-ext", ".bin") == ".bin"


def test_guess_content_type():
    assert guess_content_type("https://cdn/a.jpeg?x=1") == "image/jpeg"
    assert guess_content_type("https://cdn/a") == "application/octet-stream"
