import json

import httpx
import pytest

from app.core.config import settings
from app.core.errors import TranscodeProviderError
from app.services.mux_video import MuxVideoService, get_hls_url, normalize_video_url


def make_service(handler):
    return MuxVideoService(
        token_id="id",
        token_secret="secret",
        client_factory=lambda: httpx.AsyncClient(
            base_url="https://mux.test",
            transport=httpx.MockTransport(handler),
        ),
    )


def test_relative_url_uses_public_base(monkeypatch):
    monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "https://tunes.example.com/")

    assert normalize_video_url("/files/outputs/a.mp3") == "https://tunes.example.com/files/outputs/a.mp3"
    assert normalize_video_url("https://cdn/a.mp3") == "https://cdn/a.mp3"


def test_relative_url_without_public_base_is_permanent(monkeypatch):
    monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "")

    with pytest.raises(TranscodeProviderError) as exc:
        normalize_video_url("/files/outputs/a.mp3")

    assert exc.value.retryable is False


@pytest.mark.anyio
async def test_create_asset():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={
            "data": {"id": "asset-1", "status": "preparing", "playback_ids": [{"id": "play-1", "policy": "public"}]}
        })

    asset = await make_service(handler).create_asset("https://cdn/a.mp3")

    assert asset == {"asset_id": "asset-1", "playback_id": "play-1", "status": "preparing"}
    assert seen["body"]["inputs"] == [{"url": "https://cdn/a.mp3"}]


@pytest.mark.anyio
async def test_asset_status_ready():
    handler = lambda r: httpx.Response(200, json={
        "data": {"id": "asset-1", "status": "ready", "duration": 61.2, "playback_ids": [{"id": "play-1"}]}
    })

    status = await make_service(handler).get_asset_status("asset-1")

    assert status["status"] == "ready"
    assert status["hls_url"] == get_hls_url("play-1")


@pytest.mark.anyio
async def test_client_error_is_permanent():
    with pytest.raises(TranscodeProviderError) as exc:
        await make_service(lambda r: httpx.Response(400, text="invalid input")).create_asset("https://cdn/a.mp3")

    assert exc.value.retryable is False


@pytest.mark.anyio
async def test_rate_limit_is_retryable():
    with pytest.raises(TranscodeProviderError) as exc:
        await make_service(lambda r: httpx.Response(429)).create_asset("https://cdn/a.mp3")

    assert exc.value.retryable is True
