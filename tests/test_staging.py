from __future__ import annotations

import asyncio
import io
import os
import time
from pathlib import Path

import pytest

from gallery.ingest.errors import StagingError
from gallery.ingest.staging import StagingStore, unique_name


class FakeUpload:
    """Mimics the async ``read`` interface of Starlette's UploadFile."""

    def __init__(self, filename: str, data: bytes, content_type: str | None = None):
        self.filename = filename
        self.content_type = content_type
        self._buffer = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        return self._buffer.read(size)


def test_stage_upload_writes_file_and_counts_bytes(tmp_path: Path):
    store = StagingStore(tmp_path / "staging")
    data = os.urandom(3 * 1024 * 1024 + 17)
    staged = asyncio.run(store.stage_upload(FakeUpload("../../evil/Holiday.JPG", data, "image/jpeg")))

    assert staged.path.exists()
    assert store.contains(staged.path)
    assert staged.path.read_bytes() == data
    assert staged.size_bytes == len(data)
    assert staged.original_name == "Holiday.JPG"
    assert staged.extension == "jpg"
    assert staged.declared_mime_type == "image/jpeg"


def test_stage_upload_guesses_mime_type(tmp_path: Path):
    store = StagingStore(tmp_path)
    staged = asyncio.run(store.stage_upload(FakeUpload("clip.mp4", b"\x00" * 10)))
    assert staged.declared_mime_type == "video/mp4"


def test_stage_upload_rejects_empty_upload(tmp_path: Path):
    store = StagingStore(tmp_path)
    with pytest.raises(StagingError):
        asyncio.run(store.stage_upload(FakeUpload("empty.png", b"", "image/png")))
    assert list(tmp_path.iterdir()) == []


def test_stage_upload_rejects_oversized_upload_and_removes_partial(tmp_path: Path):
    store = StagingStore(tmp_path, max_bytes=1024)
    with pytest.raises(StagingError):
        asyncio.run(store.stage_upload(FakeUpload("big.png", b"x" * 4096, "image/png")))
    assert list(tmp_path.iterdir()) == []


def test_stage_path_copies_and_leaves_source(tmp_path: Path):
    source = tmp_path / "source.png"
    source.write_bytes(b"png-bytes")
    store = StagingStore(tmp_path / "staging")

    staged = store.stage_path(source)

    assert source.exists()
    assert staged.path != source
    assert staged.path.read_bytes() == b"png-bytes"
    assert staged.declared_mime_type == "image/png"
    assert staged.size_bytes == len(b"png-bytes")


def test_unique_names_do_not_collide():
    names = {unique_name("thumb", ".jpg") for _ in range(2000)}
    assert len(names) == 2000


def test_discard_is_best_effort(tmp_path: Path):
    store = StagingStore(tmp_path)
    target = store.new_temp_path("file", ".bin")
    target.write_bytes(b"1")

    assert store.discard(target) is True
    assert not target.exists()
    assert store.discard(target) is True
    assert store.discard(None) is True


def test_discard_reports_failure_without_raising(tmp_path: Path):
    store = StagingStore(tmp_path)
    directory = tmp_path / "not-a-file"
    directory.mkdir()
    assert store.discard(directory) is False
    assert directory.exists()


def test_sweep_removes_only_stale_files(tmp_path: Path):
    store = StagingStore(tmp_path)
    stale = store.new_temp_path("file", ".jpg")
    fresh = store.new_temp_path("file", ".jpg")
    stale.write_bytes(b"old")
    fresh.write_bytes(b"new")
    old = time.time() - 7200
    os.utime(stale, (old, old))

    removed = store.sweep(3600)

    assert removed == 1
    assert not stale.exists()
    assert fresh.exists()
