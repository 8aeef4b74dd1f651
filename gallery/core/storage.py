from __future__ import annotations

import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse
from uuid import uuid4

import cloudinary
import cloudinary.api
import cloudinary.uploader
from cloudinary import exceptions as cloudinary_exceptions

from gallery.ingest.errors import StorageError
from gallery.ingest.models import MediaKind

from .config import Settings

UPLOAD_MARKER = "/upload/"
_VERSION_SEGMENT = re.compile(r"^v\d+$")
_SAFE_NAME = re.compile(r"[^A-Za-z0-9_-]+")


@dataclass(slots=True, frozen=True)
class StoredObject:
    remote_id: str
    url: str
    format: Optional[str] = None
    size_bytes: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(slots=True, frozen=True)
class UploadOptions:
    """Normalisation applied by the provider while ingesting the upload."""

    format: Optional[str] = None
    max_dimension: Optional[int] = None
    quality: Optional[str] = None


class ObjectStorage(ABC):
    """Remote object storage capability: put, delete and get by id.

    Implementations are synchronous; the gateway runs them on worker threads
    and owns timeouts and retries.
    """

    @abstractmethod
    def put(self, local_path: Path, folder: str, *, kind: MediaKind, options: UploadOptions) -> StoredObject: ...

    @abstractmethod
    def delete(self, remote_id: str, *, kind: MediaKind) -> bool:
        """Delete an object. Returns False when the provider has no such object."""

    @abstractmethod
    def get(self, remote_id: str, *, kind: MediaKind) -> Optional[StoredObject]: ...


def remote_id_from_url(url: str) -> str:
    """Recover a storage identifier from a previously issued URL.

    The identifier is the path after the last ``/upload/`` marker, without a
    leading version segment (``v1712345678``) and without the file extension.
    ``https://cdn/x/image/upload/v17/portfolio/gallery/cat.webp`` becomes
    ``portfolio/gallery/cat``.
    """
    path = unquote(urlparse(url).path)
    if UPLOAD_MARKER not in path:
        raise ValueError(f"URL does not follow the /upload/ convention: {url}")
    tail = path.rsplit(UPLOAD_MARKER, 1)[1].strip("/")
    segments = [segment for segment in tail.split("/") if segment]
    if segments and _VERSION_SEGMENT.match(segments[0]) and len(segments) > 1:
        segments = segments[1:]
    if not segments:
        raise ValueError(f"URL carries no identifier: {url}")
    last = segments[-1]
    if "." in last:
        segments[-1] = last.rsplit(".", 1)[0]
    return "/".join(segments)


def resource_kind_from_url(url: str) -> Optional[MediaKind]:
    path = urlparse(url).path
    if UPLOAD_MARKER not in path:
        return None
    head = path.rsplit(UPLOAD_MARKER, 1)[0]
    resource = head.rsplit("/", 1)[-1]
    try:
        return MediaKind(resource)
    except ValueError:
        return None


def is_url(value: str) -> bool:
    return urlparse(value).scheme in {"http", "https", "file"}


class LocalObjectStorage(ObjectStorage):
    """Filesystem-backed object store suitable for development and tests.

    Objects live under ``base_path/<folder>/<name>.<ext>`` and are published as
    ``<public_url>/<kind>/upload/<folder>/<name>.<ext>``. No transcoding is
    done here: normalisation options are a hosted-provider concern.
    """

    def __init__(self, base_path: Path, public_url: str = "http://localhost:8000/media"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_url = public_url.rstrip("/")

    def _resolve(self, remote_id: str) -> Path:
        target = (self.base_path / remote_id).resolve()
        try:
            target.relative_to(self.base_path.resolve())
        except ValueError:
            raise StorageError(f"identifier escapes the storage root: {remote_id}") from None
        return target

    def _find(self, remote_id: str) -> Optional[Path]:
        stem = self._resolve(remote_id)
        if not stem.parent.exists():
            return None
        for candidate in sorted(stem.parent.glob(f"{stem.name}.*")):
            if candidate.is_file():
                return candidate
        return None

    def _describe(self, remote_id: str, path: Path, kind: MediaKind) -> StoredObject:
        relative = path.relative_to(self.base_path.resolve()).as_posix()
        return StoredObject(
            remote_id=remote_id,
            url=f"{self.public_url}/{kind.value}{UPLOAD_MARKER}{relative}",
            format=path.suffix.lstrip(".").lower() or None,
            size_bytes=path.stat().st_size,
        )

    def put(self, local_path: Path, folder: str, *, kind: MediaKind, options: UploadOptions) -> StoredObject:
        source = Path(local_path)
        if not source.is_file():
            raise StorageError(f"nothing to upload at {source}")
        stem = _SAFE_NAME.sub("_", source.stem).strip("_") or "file"
        name = f"{stem}_{uuid4().hex[:8]}"
        remote_id = f"{folder.strip('/')}/{name}" if folder.strip("/") else name
        target = self._resolve(f"{remote_id}{source.suffix.lower()}")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        return self._describe(remote_id, target, kind)

    def delete(self, remote_id: str, *, kind: MediaKind) -> bool:
        found = self._find(remote_id)
        if found is None:
            return False
        found.unlink(missing_ok=True)
        return True

    def get(self, remote_id: str, *, kind: MediaKind) -> Optional[StoredObject]:
        found = self._find(remote_id)
        if found is None:
            return None
        return self._describe(remote_id, found, kind)


class CloudinaryStorage(ObjectStorage):
    """Cloudinary-backed object store using the official SDK."""

    _TRANSIENT_ERRORS = (cloudinary_exceptions.RateLimited, cloudinary_exceptions.GeneralError)

    def __init__(self, *, cloud_name: str, api_key: str, api_secret: str, timeout_s: float = 8.0):
        cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)
        self.timeout_s = timeout_s

    def put(self, local_path: Path, folder: str, *, kind: MediaKind, options: UploadOptions) -> StoredObject:
        params: Dict[str, Any] = {
            "folder": folder,
            "resource_type": kind.value,
            "use_filename": True,
            "unique_filename": True,
            "overwrite": True,
            "timeout": self.timeout_s,
        }
        if options.quality:
            params["quality"] = options.quality
        if options.format:
            params["format"] = options.format
        if options.max_dimension:
            params["transformation"] = [
                {"width": options.max_dimension, "crop": "limit", "quality": "auto"},
                {"fetch_format": "auto"},
            ]
        try:
            result = cloudinary.uploader.upload(str(local_path), **params)
        except (cloudinary_exceptions.Error, OSError) as exc:
            raise self._translate(exc, "upload") from exc
        return StoredObject(
            remote_id=result["public_id"],
            url=result.get("secure_url") or result["url"],
            format=result.get("format"),
            size_bytes=result.get("bytes"),
            width=result.get("width"),
            height=result.get("height"),
        )

    def delete(self, remote_id: str, *, kind: MediaKind) -> bool:
        try:
            result = cloudinary.uploader.destroy(
                remote_id,
                resource_type=kind.value,
                invalidate=True,
                timeout=self.timeout_s,
            )
        except cloudinary_exceptions.NotFound:
            return False
        except (cloudinary_exceptions.Error, OSError) as exc:
            raise self._translate(exc, "destroy") from exc
        outcome = (result or {}).get("result")
        if outcome == "not found":
            return False
        if outcome != "ok":
            raise StorageError(f"destroy of {remote_id} returned {outcome!r}")
        return True

    def get(self, remote_id: str, *, kind: MediaKind) -> Optional[StoredObject]:
        try:
            result = cloudinary.api.resource(remote_id, resource_type=kind.value, timeout=self.timeout_s)
        except cloudinary_exceptions.NotFound:
            return None
        except (cloudinary_exceptions.Error, OSError) as exc:
            raise self._translate(exc, "resource") from exc
        return StoredObject(
            remote_id=result["public_id"],
            url=result.get("secure_url") or result["url"],
            format=result.get("format"),
            size_bytes=result.get("bytes"),
            width=result.get("width"),
            height=result.get("height"),
        )

    def _translate(self, exc: BaseException, operation: str) -> StorageError:
        transient = isinstance(exc, self._TRANSIENT_ERRORS + (OSError,))
        return StorageError(f"cloudinary {operation} failed: {exc}", transient=transient)


def get_storage(settings: Settings) -> ObjectStorage:
    if settings.storage_backend == "local":
        return LocalObjectStorage(
            base_path=Path(settings.local_storage_base_path),
            public_url=settings.local_storage_public_url,
        )
    if settings.storage_backend == "cloudinary":
        secrets = settings.secrets
        if not (settings.cloudinary_cloud_name and secrets.cloudinary_api_key and secrets.cloudinary_api_secret):
            raise ValueError("Cloudinary storage requires cloud name, API key and API secret.")
        return CloudinaryStorage(
            cloud_name=settings.cloudinary_cloud_name,
            api_key=secrets.cloudinary_api_key,
            api_secret=secrets.cloudinary_api_secret,
            timeout_s=settings.storage_client_timeout_s,
        )
    raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")


__all__ = [
    "ObjectStorage",
    "LocalObjectStorage",
    "CloudinaryStorage",
    "StoredObject",
    "UploadOptions",
    "get_storage",
    "remote_id_from_url",
    "resource_kind_from_url",
    "is_url",
]
