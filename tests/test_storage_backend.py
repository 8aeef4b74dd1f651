from __future__ import annotations

from pathlib import Path

import pytest

from gallery.core.config import get_settings
from gallery.core.storage import (
    CloudinaryStorage,
    LocalObjectStorage,
    UploadOptions,
    get_storage,
    remote_id_from_url,
    resource_kind_from_url,
)
from gallery.ingest.errors import StorageError
from gallery.ingest.models import MediaKind


def test_default_backend_is_local(settings):
    storage = get_storage(settings)
    assert isinstance(storage, LocalObjectStorage)


def test_selecting_cloudinary_returns_cloudinary_storage(monkeypatch):
    monkeypatch.setenv("GALLERY_STORAGE_BACKEND", "cloudinary")
    monkeypatch.setenv("GALLERY_CLOUDINARY_CLOUD_NAME", "demo")
    monkeypatch.setenv("GALLERY_CLOUDINARY_API_KEY", "key")
    monkeypatch.setenv("GALLERY_CLOUDINARY_API_SECRET", "secret")
    monkeypatch.delenv("GALLERY_STORAGE", raising=False)
    get_settings.cache_clear()
    settings = get_settings()
    storage = get_storage(settings)
    assert isinstance(storage, CloudinaryStorage)
    assert storage.timeout_s == pytest.approx(settings.storage_client_timeout_s)


def test_cloudinary_without_credentials_is_rejected(monkeypatch):
    monkeypatch.setenv("GALLERY_STORAGE_BACKEND", "cloudinary")
    monkeypatch.delenv("GALLERY_STORAGE", raising=False)
    monkeypatch.delenv("GALLERY_CLOUDINARY_API_KEY", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ValueError):
        get_storage(get_settings())


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://res.cloudinary.com/demo/image/upload/v1712345678/portfolio/gallery/cat.webp", "portfolio/gallery/cat"),
        ("https://res.cloudinary.com/demo/video/upload/portfolio/gallery/clip.mp4", "portfolio/gallery/clip"),
        ("https://res.cloudinary.com/demo/image/upload/v1/portfolio/gallery/thumbnails/thumb-1.jpg", "portfolio/gallery/thumbnails/thumb-1"),
        ("https://media.test/image/upload/portfolio/gallery/my%20photo.v2.jpg", "portfolio/gallery/my photo.v2"),
        ("https://res.cloudinary.com/demo/image/upload/v17/cat", "cat"),
        ("https://media.test/image/upload/v2", "v2"),
    ],
)
def test_remote_id_from_url(url, expected):
    assert remote_id_from_url(url) == expected


@pytest.mark.parametrize(
    "url",
    [
        "https://example.com/images/cat.jpg",
        "https://res.cloudinary.com/demo/image/upload/",
    ],
)
def test_remote_id_from_url_errors(url):
    with pytest.raises(ValueError):
        remote_id_from_url(url)


def test_resource_kind_from_url():
    assert resource_kind_from_url("https://res.cloudinary.com/demo/video/upload/v1/a/b.mp4") is MediaKind.video
    assert resource_kind_from_url("https://res.cloudinary.com/demo/image/upload/a/b.jpg") is MediaKind.image
    assert resource_kind_from_url("https://res.cloudinary.com/demo/raw/upload/a/b.pdf") is None
    assert resource_kind_from_url("https://example.com/a/b.jpg") is None


def test_local_storage_round_trip(tmp_path: Path):
    source = tmp_path / "My Holiday.photo.JPG"
    source.write_bytes(b"jpeg-bytes")
    storage = LocalObjectStorage(tmp_path / "remote", public_url="https://media.test/")

    stored = storage.put(source, "portfolio/gallery", kind=MediaKind.image, options=UploadOptions())

    assert stored.remote_id.startswith("portfolio/gallery/My_Holiday_photo_")
    assert stored.url.startswith("https://media.test/image/upload/portfolio/gallery/")
    assert stored.url.endswith(".jpg")
    assert stored.format == "jpg"
    assert stored.size_bytes == len(b"jpeg-bytes")
    assert remote_id_from_url(stored.url) == stored.remote_id
    assert source.exists()

    fetched = storage.get(stored.remote_id, kind=MediaKind.image)
    assert fetched is not None and fetched.url == stored.url

    assert storage.delete(stored.remote_id, kind=MediaKind.image) is True
    assert storage.delete(stored.remote_id, kind=MediaKind.image) is False
    assert storage.get(stored.remote_id, kind=MediaKind.image) is None


def test_local_storage_refuses_path_traversal(tmp_path: Path):
    storage = LocalObjectStorage(tmp_path / "remote")
    with pytest.raises(StorageError):
        storage.delete("../../etc/passwd", kind=MediaKind.image)


def test_local_storage_put_of_missing_file(tmp_path: Path):
    storage = LocalObjectStorage(tmp_path / "remote")
    with pytest.raises(StorageError):
        storage.put(tmp_path / "missing.jpg", "gallery", kind=MediaKind.image, options=UploadOptions())
