from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import IngestError, UnsupportedMediaKind

__all__ = [
    "MediaKind",
    "IngestStage",
    "StagedFile",
    "GeoLocation",
    "ExifData",
    "ImageMetadata",
    "VideoMetadata",
    "Metadata",
    "empty_metadata",
    "MediaRecord",
    "BatchReport",
    "ReportCollector",
]


class MediaKind(str, enum.Enum):
    image = "image"
    video = "video"

    @classmethod
    def from_mime_type(cls, mime_type: Optional[str]) -> "MediaKind":
        """Classify by MIME prefix. Unknown prefixes are rejected, never defaulted."""
        if not mime_type or "/" not in mime_type:
            raise UnsupportedMediaKind(mime_type)
        prefix = mime_type.split("/", 1)[0].strip().lower()
        try:
            return cls(prefix)
        except ValueError:
            raise UnsupportedMediaKind(mime_type) from None


class IngestStage(str, enum.Enum):
    staged = "staged"
    inspect = "inspect"
    thumbnail = "thumbnail"
    upload_original = "upload-original"
    upload_thumbnail = "upload-thumbnail"
    recorded = "recorded"


@dataclass(slots=True, frozen=True)
class StagedFile:
    """An upload sitting on local disk, exclusively owned by one holder at a time."""

    path: Path
    declared_mime_type: Optional[str]
    original_name: str
    size_bytes: int

    @property
    def extension(self) -> str:
        return self.path.suffix.lstrip(".").lower()


def _compact(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


def _to_dict(instance: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for item in fields(instance):
        value = getattr(instance, item.name)
        if value is None:
            continue
        payload[item.name] = _compact(value)
    return payload


@dataclass(slots=True, frozen=True)
class GeoLocation:
    lat: float
    lon: float
    area_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


@dataclass(slots=True, frozen=True)
class ExifData:
    camera_make: Optional[str] = None
    camera_model: Optional[str] = None
    focal_length_mm: Optional[float] = None
    aperture: Optional[float] = None
    shutter_speed_seconds: Optional[float] = None
    iso: Optional[int] = None
    taken_at: Optional[datetime] = None
    location: Optional[GeoLocation] = None

    def is_empty(self) -> bool:
        return all(getattr(self, item.name) is None for item in fields(self))

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


@dataclass(slots=True, frozen=True)
class ImageMetadata:
    width: Optional[int] = None
    height: Optional[int] = None
    format: Optional[str] = None
    size_bytes: Optional[int] = None
    aspect_ratio: Optional[float] = None
    exif: Optional[ExifData] = None

    @property
    def kind(self) -> MediaKind:
        return MediaKind.image

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


@dataclass(slots=True, frozen=True)
class VideoMetadata:
    width: Optional[int] = None
    height: Optional[int] = None
    duration_seconds: Optional[int] = None
    format: Optional[str] = None
    size_bytes: Optional[int] = None
    aspect_ratio: Optional[str] = None
    codec: Optional[str] = None
    frame_rate_fps: Optional[float] = None

    @property
    def kind(self) -> MediaKind:
        return MediaKind.video

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)


Metadata = Union[ImageMetadata, VideoMetadata]


def empty_metadata(kind: MediaKind) -> Metadata:
    return ImageMetadata() if kind is MediaKind.image else VideoMetadata()


@dataclass(slots=True, frozen=True)
class MediaRecord:
    """Result of one successful ingestion. The pipeline keeps no reference to it."""

    remote_id: str
    url: str
    media_kind: MediaKind
    metadata: Metadata
    original_filename: str
    thumbnail_remote_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    input_index: Optional[int] = None

    def with_index(self, index: int) -> "MediaRecord":
        return replace(self, input_index=index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "remote_id": self.remote_id,
            "url": self.url,
            "thumbnail_remote_id": self.thumbnail_remote_id,
            "thumbnail_url": self.thumbnail_url,
            "media_kind": self.media_kind.value,
            "metadata": self.metadata.to_dict(),
            "original_filename": self.original_filename,
            "input_index": self.input_index,
        }


def _index_key(entry: Union[MediaRecord, IngestError]) -> int:
    return entry.input_index if entry.input_index is not None else -1


@dataclass(slots=True, frozen=True)
class BatchReport:
    """Aggregate outcome of a batch. Entries are in completion order."""

    succeeded: Tuple[MediaRecord, ...] = ()
    failed: Tuple[IngestError, ...] = ()
    cancelled: Tuple[StagedFile, ...] = ()
    was_cancelled: bool = False

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.cancelled)

    def summary(self) -> str:
        text = f"{len(self.succeeded)} of {self.total} uploaded"
        if self.cancelled:
            text += f" ({len(self.cancelled)} not started)"
        return text

    def in_input_order(self) -> "BatchReport":
        return replace(
            self,
            succeeded=tuple(sorted(self.succeeded, key=_index_key)),
            failed=tuple(sorted(self.failed, key=_index_key)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "succeeded": [record.to_dict() for record in self.succeeded],
            "failed": [error.to_dict() for error in self.failed],
            "cancelled": [staged.original_name for staged in self.cancelled],
            "was_cancelled": self.was_cancelled,
        }


@dataclass(slots=True)
class ReportCollector:
    """Append-only accumulator for batch results.

    Mutated only from the event loop thread, so appends never interleave.
    """

    succeeded: List[MediaRecord] = field(default_factory=list)
    failed: List[IngestError] = field(default_factory=list)

    def add_success(self, record: MediaRecord) -> None:
        self.succeeded.append(record)

    def add_failure(self, error: IngestError) -> None:
        self.failed.append(error)

    def freeze(self, *, cancelled: Tuple[StagedFile, ...] = (), was_cancelled: bool = False) -> BatchReport:
        return BatchReport(
            succeeded=tuple(self.succeeded),
            failed=tuple(self.failed),
            cancelled=cancelled,
            was_cancelled=was_cancelled,
        )
