"""Domain entities and ingest utilities reused by the services and the CLI."""

from gallery.ingest.errors import (
    GalleryError,
    IngestError,
    InspectionFailure,
    InspectionTimeout,
    StagingError,
    StorageDeleteFailure,
    StorageError,
    StorageTimeout,
    ThumbnailFailure,
    UnsupportedMediaKind,
    UploadOriginalFailure,
    UploadThumbnailFailure,
)
from gallery.ingest.inspector import inspect_media
from gallery.ingest.models import (
    BatchReport,
    ExifData,
    GeoLocation,
    ImageMetadata,
    IngestStage,
    MediaKind,
    MediaRecord,
    StagedFile,
    VideoMetadata,
)
from gallery.ingest.staging import StagingStore
from gallery.ingest.thumbnails import generate_thumbnail

__all__ = [
    "BatchReport",
    "ExifData",
    "GalleryError",
    "GeoLocation",
    "ImageMetadata",
    "IngestError",
    "IngestStage",
    "InspectionFailure",
    "InspectionTimeout",
    "MediaKind",
    "MediaRecord",
    "StagedFile",
    "StagingError",
    "StagingStore",
    "StorageDeleteFailure",
    "StorageError",
    "StorageTimeout",
    "ThumbnailFailure",
    "UnsupportedMediaKind",
    "UploadOriginalFailure",
    "UploadThumbnailFailure",
    "VideoMetadata",
    "generate_thumbnail",
    "inspect_media",
]
