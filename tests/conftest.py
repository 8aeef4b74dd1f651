import asyncio
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Optional

import pytest
from PIL import Image

from gallery.core.config import get_settings
from gallery.core.db import Base, create_engine
from gallery.core.storage import LocalObjectStorage, ObjectStorage, StoredObject, UploadOptions
from gallery.ingest.errors import StorageError
from gallery.ingest.models import MediaKind
import gallery.db.models  # noqa: F401 - ensure models are imported for metadata


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "no_default_env: disable the default gallery environment bootstrap fixture for tests that manage their own .env",
    )


@pytest.fixture(autouse=True)
def configure_environment(request, monkeypatch, tmp_path, tmp_path_factory):
    if request.node.get_closest_marker("no_default_env"):
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()
        return
    db_path = tmp_path_factory.mktemp("db") / "gallery_test.db"

    monkeypatch.setenv("GALLERY_ENV", "test")
    monkeypatch.setenv("GALLERY_LOG_LEVEL", "debug")
    monkeypatch.setenv("GALLERY_DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("GALLERY_STAGING_DIR", str(tmp_path / "staging"))
    monkeypatch.setenv("GALLERY_STORAGE", "local")
    monkeypatch.setenv("GALLERY_LOCAL_STORAGE_BASE_PATH", str(tmp_path / "remote"))
    monkeypatch.setenv("GALLERY_LOCAL_STORAGE_PUBLIC_URL", "https://media.test")
    monkeypatch.setenv("GALLERY_STORAGE_CALL_TIMEOUT_S", "2")
    monkeypatch.setenv("GALLERY_STORAGE_RETRY_INITIAL_DELAY_S", "0.01")

    get_settings.cache_clear()
    settings = get_settings()
    engine = create_engine(settings)

    async def _setup() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_setup())

    yield

    async def _teardown() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()

    asyncio.run(_teardown())
    get_settings.cache_clear()


@pytest.fixture()
def settings(configure_environment):
    return get_settings()


def write_image(path: Path, size=(640, 480), *, fmt: str = "JPEG", color=(200, 40, 40), exif: Optional[bytes] = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = "RGBA" if fmt == "PNG" else "RGB"
    image = Image.new(mode, size, color)
    params = {"exif": exif} if exif is not None else {}
    image.save(path, format=fmt, **params)
    return path


def write_corrupt_exif_jpeg(path: Path, size=(320, 240)) -> Path:
    """A valid JPEG carrying an APP1 Exif segment whose TIFF payload is garbage."""
    write_image(path, size)
    data = path.read_bytes()
    payload = b"Exif\x00\x00" + b"\xde\xad\xbe\xef" * 8
    segment = b"\xff\xe1" + (len(payload) + 2).to_bytes(2, "big") + payload
    path.write_bytes(data[:2] + segment + data[2:])
    return path


class RecordingStorage(ObjectStorage):
    """Local storage wrapper that counts concurrent calls and can inject failures."""

    def __init__(self, base_path: Path, *, delay_s: float = 0.0):
        self.inner = LocalObjectStorage(base_path, public_url="https://media.test")
        self.delay_s = delay_s
        self.fail_suffixes: set[str] = set()
        self.fail_folders: set[str] = set()
        self.delete_errors: list[Exception] = []
        self.active = 0
        self.peak = 0
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def _enter(self, operation: str, target: str) -> None:
        with self._lock:
            self.calls.append((operation, target))
            self.active += 1
            self.peak = max(self.peak, self.active)

    def _exit(self) -> None:
        with self._lock:
            self.active -= 1

    def put(self, local_path: Path, folder: str, *, kind: MediaKind, options: UploadOptions) -> StoredObject:
        self._enter("put", folder)
        try:
            time.sleep(self.delay_s)
            if folder in self.fail_folders or Path(local_path).suffix in self.fail_suffixes:
                raise StorageError(f"rejected {Path(local_path).name}")
            return self.inner.put(local_path, folder, kind=kind, options=options)
        finally:
            self._exit()

    def delete(self, remote_id: str, *, kind: MediaKind) -> bool:
        self._enter("delete", remote_id)
        try:
            if self.delete_errors:
                raise self.delete_errors.pop(0)
            return self.inner.delete(remote_id, kind=kind)
        finally:
            self._exit()

    def get(self, remote_id: str, *, kind: MediaKind) -> Optional[StoredObject]:
        return self.inner.get(remote_id, kind=kind)


@pytest.fixture()
def recording_storage(tmp_path) -> RecordingStorage:
    return RecordingStorage(tmp_path / "remote")


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


requires_ffmpeg = pytest.mark.skipif(not _ffmpeg_available(), reason="ffmpeg/ffprobe not installed")


@pytest.fixture(scope="session")
def generated_video_file(tmp_path_factory) -> Path:
    """
    Generates a small, valid MP4 video file (2.5 seconds, 160x90) for testing.
    """
    if not _ffmpeg_available():
        pytest.skip("ffmpeg/ffprobe not installed")
    video_path = tmp_path_factory.mktemp("data") / "test_video.mp4"

    command = [
        "ffmpeg",
        "-f", "lavfi",
        "-i", "testsrc=size=160x90:rate=25",
        "-t", "2.5",
        "-pix_fmt", "yuv420p",
        "-y",
        str(video_path)
    ]
    subprocess.run(command, check=True, capture_output=True)
    return video_path


@pytest.fixture(scope="session")
def generated_audio_file(tmp_path_factory) -> Path:
    if not _ffmpeg_available():
        pytest.skip("ffmpeg/ffprobe not installed")
    audio_path = tmp_path_factory.mktemp("data") / "audio_only.mp4"
    command = [
        "ffmpeg",
        "-f", "lavfi",
        "-i", "sine=frequency=440:duration=1",
        "-c:a", "aac",
        "-y",
        str(audio_path),
    ]
    subprocess.run(command, check=True, capture_output=True)
    return audio_path
