from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Optional

import pytest

from gallery.core.storage import LocalObjectStorage, ObjectStorage, StoredObject, UploadOptions
from gallery.ingest.errors import StorageError, StorageTimeout
from gallery.ingest.models import MediaKind
from gallery.services.gateway import DeleteStatus, RetryPolicy, StorageGateway
from tests.conftest import write_image


class FlakyStorage(ObjectStorage):
    def __init__(self, failures: list[Exception], *, sleep_s: float = 0.0):
        self.failures = failures
        self.sleep_s = sleep_s
        self.put_calls = 0
        self.deleted: list[str] = []
        self.last_options: Optional[UploadOptions] = None
        self.last_folder: Optional[str] = None

    def put(self, local_path: Path, folder: str, *, kind: MediaKind, options: UploadOptions) -> StoredObject:
        self.put_calls += 1
        self.last_options = options
        self.last_folder = folder
        time.sleep(self.sleep_s)
        if self.failures:
            raise self.failures.pop(0)
        return StoredObject(remote_id=f"{folder}/{local_path.stem}", url=f"https://cdn.test/{kind.value}/upload/{folder}/{local_path.name}")

    def delete(self, remote_id: str, *, kind: MediaKind) -> bool:
        time.sleep(self.sleep_s)
        if self.failures:
            raise self.failures.pop(0)
        self.deleted.append(remote_id)
        return True

    def get(self, remote_id: str, *, kind: MediaKind) -> Optional[StoredObject]:
        return None


def _fast(settings, **overrides):
    return settings.model_copy(update=overrides)


def test_put_passes_normalisation_as_upload_parameters(settings, tmp_path: Path):
    storage = FlakyStorage([])
    gateway = StorageGateway(storage, settings)
    source = write_image(tmp_path / "a.jpg")

    stored = asyncio.run(gateway.put(source, "gallery", kind=MediaKind.image))

    assert stored.remote_id == "portfolio/gallery/a"
    assert storage.last_folder == "portfolio/gallery"
    assert storage.last_options == UploadOptions(format="webp", max_dimension=2000, quality="auto:good")

    asyncio.run(gateway.put(source, "gallery", kind=MediaKind.video))
    assert storage.last_options.format is None


def test_put_times_out_with_typed_error(settings, tmp_path: Path):
    storage = FlakyStorage([StorageError("invalid image file")], sleep_s=0.3)
    gateway = StorageGateway(storage, _fast(settings, storage_call_timeout_s=0.1, storage_max_retries=0))
    source = write_image(tmp_path / "a.jpg")

    started = time.monotonic()
    with pytest.raises(StorageTimeout) as excinfo:
        asyncio.run(gateway.put(source, "gallery", kind=MediaKind.image))
    assert time.monotonic() - started >= 0.3
    assert excinfo.value.late_result is None
    assert storage.deleted == []


def test_timed_out_put_is_waited_out_and_never_retried(settings, tmp_path: Path):
    storage = FlakyStorage([], sleep_s=0.3)
    gateway = StorageGateway(
        storage,
        _fast(settings, storage_call_timeout_s=0.1),
        retry=RetryPolicy(max_retries=3, initial_delay_s=0.01),
    )
    source = write_image(tmp_path / "a.jpg")

    started = time.monotonic()
    with pytest.raises(StorageTimeout) as excinfo:
        asyncio.run(gateway.put(source, "gallery", kind=MediaKind.image))

    assert storage.put_calls == 1
    assert time.monotonic() - started >= 0.3
    assert excinfo.value.late_result.remote_id == "portfolio/gallery/a"
    assert storage.deleted == ["portfolio/gallery/a"]


def test_timed_out_delete_is_retried_after_the_first_call_settles(settings):
    storage = FlakyStorage([], sleep_s=0.15)
    gateway = StorageGateway(
        storage,
        _fast(settings, storage_call_timeout_s=0.1),
        retry=RetryPolicy(max_retries=1, initial_delay_s=0.01),
    )

    result = asyncio.run(gateway.delete("portfolio/gallery/cat"))

    assert result.status is DeleteStatus.failed
    assert storage.deleted == ["portfolio/gallery/cat", "portfolio/gallery/cat"]


def test_transient_failures_are_retried(settings, tmp_path: Path):
    storage = FlakyStorage([StorageError("503", transient=True), ConnectionResetError("reset")])
    gateway = StorageGateway(storage, settings, retry=RetryPolicy(max_retries=2, initial_delay_s=0.01))
    source = write_image(tmp_path / "a.jpg")

    stored = asyncio.run(gateway.put(source, "gallery", kind=MediaKind.image))

    assert stored.remote_id == "portfolio/gallery/a"
    assert storage.put_calls == 3


def test_retries_are_bounded(settings, tmp_path: Path):
    storage = FlakyStorage([StorageError("503", transient=True) for _ in range(5)])
    gateway = StorageGateway(storage, settings, retry=RetryPolicy(max_retries=1, initial_delay_s=0.01))
    source = write_image(tmp_path / "a.jpg")

    with pytest.raises(StorageError):
        asyncio.run(gateway.put(source, "gallery", kind=MediaKind.image))
    assert storage.put_calls == 2


def test_permanent_failures_are_not_retried(settings, tmp_path: Path):
    storage = FlakyStorage([StorageError("invalid image file")])
    gateway = StorageGateway(storage, settings, retry=RetryPolicy(max_retries=3, initial_delay_s=0.01))
    source = write_image(tmp_path / "a.jpg")

    with pytest.raises(StorageError):
        asyncio.run(gateway.put(source, "gallery", kind=MediaKind.image))
    assert storage.put_calls == 1


def test_retry_delay_grows_exponentially():
    policy = RetryPolicy(max_retries=3, initial_delay_s=0.5, backoff_base=2.0)
    assert 0.5 <= policy.delay_for(1) <= 0.55
    assert 1.0 <= policy.delay_for(2) <= 1.1
    assert 2.0 <= policy.delay_for(3) <= 2.2


def test_delete_twice_succeeds_both_times(settings, tmp_path: Path):
    storage = LocalObjectStorage(tmp_path / "remote", public_url="https://media.test")
    gateway = StorageGateway(storage, settings)
    stored = asyncio.run(gateway.put(write_image(tmp_path / "a.jpg"), "gallery", kind=MediaKind.image))

    first = asyncio.run(gateway.delete(stored.remote_id))
    second = asyncio.run(gateway.delete(stored.remote_id))

    assert first.status is DeleteStatus.deleted
    assert second.status is DeleteStatus.not_found
    assert first.ok and second.ok


def test_delete_accepts_previously_issued_url(settings, tmp_path: Path):
    storage = LocalObjectStorage(tmp_path / "remote", public_url="https://media.test")
    gateway = StorageGateway(storage, settings)
    stored = asyncio.run(gateway.put(write_image(tmp_path / "a.png", fmt="PNG"), "gallery", kind=MediaKind.image))

    result = asyncio.run(gateway.delete(stored.url))

    assert result.status is DeleteStatus.deleted
    assert result.remote_id == stored.remote_id
    assert asyncio.run(gateway.get(stored.remote_id)) is None


def test_delete_url_infers_video_kind(settings):
    storage = FlakyStorage([])
    gateway = StorageGateway(storage, settings)
    result = asyncio.run(gateway.delete("https://res.cloudinary.com/demo/video/upload/v99/portfolio/gallery/clip.mp4"))
    assert result.status is DeleteStatus.deleted
    assert result.remote_id == "portfolio/gallery/clip"
    assert result.kind is MediaKind.video


def test_delete_failures_are_soft(settings):
    storage = FlakyStorage([StorageError("provider exploded")])
    gateway = StorageGateway(storage, settings)

    result = asyncio.run(gateway.delete("portfolio/gallery/cat", kind=MediaKind.image))

    assert result.status is DeleteStatus.failed
    assert not result.ok
    assert "provider exploded" in result.error


def test_delete_timeout_is_soft(settings):
    storage = FlakyStorage([], sleep_s=1.0)
    gateway = StorageGateway(storage, _fast(settings, storage_call_timeout_s=0.1, storage_max_retries=0))

    result = asyncio.run(gateway.delete("portfolio/gallery/cat"))

    assert result.status is DeleteStatus.failed
    assert "timed out" in result.error


def test_delete_of_unparseable_url_is_soft(settings):
    gateway = StorageGateway(FlakyStorage([]), settings)
    result = asyncio.run(gateway.delete("https://example.com/cat.jpg"))
    assert result.status is DeleteStatus.failed
    assert result.remote_id == "https://example.com/cat.jpg"
