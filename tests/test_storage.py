import pytest

from app.core.config import settings
from app.services.storage import StorageService


@pytest.fixture
def local_storage(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "USE_GCS", False)
    monkeypatch.setattr(settings, "USE_LOCAL_STORAGE", True)
    monkeypatch.setattr(settings, "LOCAL_STORAGE_PATH", str(tmp_path))
    return StorageService()


@pytest.mark.anyio
async def test_upload_then_read(local_storage, tmp_path):
    ref = await local_storage.upload_bytes(b"ID3audio", "outputs/tracks/gen_1/audio.mp3", "audio/mpeg")

    assert ref == "/files/outputs/tracks/gen_1/audio.mp3"
    assert (tmp_path / "outputs/tracks/gen_1/audio.mp3").read_bytes() == b"ID3audio"
    assert (await local_storage.read(ref)).read() == b"ID3audio"


@pytest.mark.anyio
async def test_overwrite_replaces_whole_object(local_storage):
    await local_storage.upload_bytes(b"first version, longer", "a.mp3")
    await local_storage.upload_bytes(b"second", "a.mp3")

    assert (await local_storage.read("a.mp3")).read() == b"second"


@pytest.mark.anyio
async def test_paths_cannot_escape_root(local_storage):
    with pytest.raises(ValueError):
        await local_storage.upload_bytes(b"x", "../outside.mp3")


def test_backend_name(local_storage):
    assert local_storage.backend == "local"
