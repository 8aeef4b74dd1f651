from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .models import IngestStage

__all__ = [
    "GalleryError",
    "StagingError",
    "UnsupportedMediaKind",
    "InspectionFailure",
    "InspectionTimeout",
    "ThumbnailFailure",
    "StorageError",
    "StorageTimeout",
    "StorageDeleteFailure",
    "UploadOriginalFailure",
    "UploadThumbnailFailure",
    "IngestError",
]


class GalleryError(Exception):
    """Base class for every error raised by the ingestion pipeline."""


class StagingError(GalleryError):
    """An upload could not be placed in the staging area."""


class UnsupportedMediaKind(GalleryError):
    def __init__(self, mime_type: Optional[str]):
        self.mime_type = mime_type
        super().__init__(f"unsupported media type: {mime_type or 'unknown'}")


class InspectionFailure(GalleryError):
    """Metadata could not be extracted. Callers degrade to empty metadata."""


class InspectionTimeout(InspectionFailure):
    def __init__(self, path: str, timeout_s: float):
        self.path = path
        self.timeout_s = timeout_s
        super().__init__(f"inspection of {path} exceeded {timeout_s:.1f}s")


class ThumbnailFailure(GalleryError):
    """A preview could not be generated. Callers proceed without one."""


class StorageError(GalleryError):
    """A remote object storage call failed.

    ``transient`` marks failures worth retrying (timeouts, throttling, 5xx,
    dropped connections). Everything else is reported on the first attempt.
    """

    def __init__(self, message: str, *, transient: bool = False):
        self.transient = transient
        super().__init__(message)


class StorageTimeout(StorageError):
    """The call missed its deadline.

    The provider call is waited out before this is raised; ``late_result`` holds
    whatever it returned after the deadline, if anything.
    """

    def __init__(self, operation: str, timeout_s: float, *, late_result: Any = None):
        self.operation = operation
        self.timeout_s = timeout_s
        self.late_result = late_result
        super().__init__(f"storage {operation} timed out after {timeout_s:.1f}s", transient=True)


class StorageDeleteFailure(StorageError):
    """Deletion failed. Reported softly so record removal can continue."""


class UploadOriginalFailure(StorageError):
    """The original could not be promoted. Fatal for the ingestion run."""


class UploadThumbnailFailure(StorageError):
    """The preview could not be promoted. The record is kept without one."""


class IngestError(GalleryError):
    """Terminal failure of one ingestion run.

    Never holds a file handle: only the filename, the stage that failed and
    the underlying exception.
    """

    def __init__(self, original_filename: str, stage: "IngestStage", cause: BaseException):
        self.original_filename = original_filename
        self.stage = stage
        self.cause = cause
        self.input_index: Optional[int] = None
        super().__init__(f"{original_filename}: failed at {stage.value}: {cause}")

    @property
    def reason(self) -> str:
        return type(self.cause).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_filename": self.original_filename,
            "stage": self.stage.value,
            "error": self.reason,
            "message": str(self.cause),
            "input_index": self.input_index,
        }
