from __future__ import annotations

import mimetypes
import shutil
import time
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from gallery.core.logging import get_logger

from .errors import StagingError
from .models import StagedFile

__all__ = ["StagingStore", "guess_mime_type", "unique_name"]

CHUNK_SIZE = 1024 * 1024


def unique_name(prefix: str, suffix: str = "") -> str:
    """Return a filename that cannot collide with concurrent callers."""
    return f"{prefix}-{time.time_ns()}-{uuid4().hex[:12]}{suffix}"


class StagingStore:
    """Local holding area for uploads between receipt and promotion or discard."""

    def __init__(self, root: Path, *, max_bytes: Optional[int] = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self.logger = get_logger(component="staging_store")

    async def stage_upload(self, upload: Any, *, field_name: str = "file") -> StagedFile:
        """Stream an upload object (``filename``, ``content_type``, async ``read``) to disk.

        Compatible with Starlette's ``UploadFile``. The byte count written is
        the authoritative size; client-supplied lengths are ignored.
        """
        original_name = Path(getattr(upload, "filename", None) or "upload").name
        suffix = Path(original_name).suffix.lower()
        target = self.new_temp_path(field_name, suffix)
        written = 0
        try:
            with target.open("wb") as handle:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if self.max_bytes is not None and written > self.max_bytes:
                        raise StagingError(f"{original_name} exceeds {self.max_bytes} bytes")
                    handle.write(chunk)
            if written == 0:
                raise StagingError(f"{original_name} is empty")
        except BaseException:
            self.discard(target)
            raise

        mime_type = getattr(upload, "content_type", None) or guess_mime_type(original_name)
        staged = StagedFile(
            path=target,
            declared_mime_type=mime_type,
            original_name=original_name,
            size_bytes=written,
        )
        self.logger.info("upload_staged", path=str(target), filename=original_name, size_bytes=written)
        return staged

    def stage_path(self, source: Path, *, declared_mime_type: Optional[str] = None) -> StagedFile:
        """Copy an existing file into staging. The caller's file is left untouched."""
        source = Path(source)
        if not source.is_file():
            raise FileNotFoundError(source)
        size_bytes = source.stat().st_size
        if self.max_bytes is not None and size_bytes > self.max_bytes:
            raise StagingError(f"{source.name} exceeds {self.max_bytes} bytes")

        target = self.new_temp_path("file", source.suffix.lower())
        shutil.copyfile(source, target)
        staged = StagedFile(
            path=target,
            declared_mime_type=declared_mime_type or guess_mime_type(source.name),
            original_name=source.name,
            size_bytes=size_bytes,
        )
        self.logger.info("file_staged", path=str(target), filename=source.name, size_bytes=size_bytes)
        return staged

    def new_temp_path(self, prefix: str, suffix: str = "") -> Path:
        return self.root / unique_name(prefix, suffix)

    def contains(self, path: Path) -> bool:
        try:
            Path(path).resolve().relative_to(self.root.resolve())
        except ValueError:
            return False
        return True

    def discard(self, path: Optional[Path]) -> bool:
        """Delete a staged path. Best-effort: failures are logged, never raised."""
        if path is None:
            return True
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as exc:
            self.logger.warning("staged_file_cleanup_failed", path=str(path), error=str(exc))
            return False
        return True

    def sweep(self, older_than_s: float) -> int:
        """Remove staged files abandoned by crashed runs."""
        cutoff = time.time() - older_than_s
        removed = 0
        for candidate in self.root.iterdir():
            if not candidate.is_file():
                continue
            try:
                if candidate.stat().st_mtime >= cutoff:
                    continue
            except FileNotFoundError:
                continue
            if self.discard(candidate):
                removed += 1
        if removed:
            self.logger.info("staging_swept", removed=removed)
        return removed


def guess_mime_type(filename: str) -> Optional[str]:
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type
