from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

from gallery.core.config import Settings
from gallery.core.logging import get_logger
from gallery.core.storage import StoredObject
from gallery.ingest.errors import (
    GalleryError,
    IngestError,
    InspectionFailure,
    StorageError,
    ThumbnailFailure,
    UploadOriginalFailure,
    UploadThumbnailFailure,
)
from gallery.ingest.inspector import inspect_media
from gallery.ingest.models import (
    IngestStage,
    MediaKind,
    MediaRecord,
    Metadata,
    StagedFile,
    VideoMetadata,
    empty_metadata,
)
from gallery.ingest.staging import StagingStore
from gallery.ingest.thumbnails import generate_thumbnail

from .gateway import StorageGateway

Inspector = Callable[..., Metadata]
Thumbnailer = Callable[..., Path]


class IngestionOrchestrator:
    """Drives one staged file to a MediaRecord.

    Stages run in a fixed order: staged, inspect, thumbnail, upload-original,
    upload-thumbnail, recorded. Only an unsupported media kind and a failed
    original upload end the run; every other failure degrades the record.
    The staged file and any local thumbnail are gone when ``ingest`` returns
    or raises.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: StorageGateway,
        staging: StagingStore,
        *,
        inspector: Optional[Inspector] = None,
        thumbnailer: Optional[Thumbnailer] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.staging = staging
        self.inspector = inspector or inspect_media
        self.thumbnailer = thumbnailer or generate_thumbnail
        self.logger = get_logger(component="ingest_orchestrator")

    async def ingest(self, staged: StagedFile) -> MediaRecord:
        """Run the pipeline for one file. The orchestrator owns ``staged`` from here on.

        Raises:
            IngestError: the run failed; ``stage`` names where and ``cause`` why.
        """
        logger = self.logger.bind(run_id=uuid4().hex[:12], filename=staged.original_name)
        stage = IngestStage.staged
        thumbnail_path: Optional[Path] = None
        try:
            kind = MediaKind.from_mime_type(staged.declared_mime_type)

            stage = self._enter(logger, IngestStage.inspect)
            metadata = await self._inspect(staged, kind, logger)

            stage = self._enter(logger, IngestStage.thumbnail)
            thumbnail_path = await self._thumbnail(staged, kind, metadata, logger)

            stage = self._enter(logger, IngestStage.upload_original)
            original = await self._upload_original(staged, kind)

            stage = self._enter(logger, IngestStage.upload_thumbnail)
            thumbnail: Optional[StoredObject] = None
            if thumbnail_path is not None:
                try:
                    thumbnail = await self._upload_thumbnail(thumbnail_path)
                except UploadThumbnailFailure as exc:
                    logger.warning("thumbnail_upload_failed", error=str(exc))
                except Exception:
                    logger.exception("thumbnail_upload_crashed")
                finally:
                    self.staging.discard(thumbnail_path)
                    thumbnail_path = None

            stage = self._enter(logger, IngestStage.recorded)
            record = MediaRecord(
                remote_id=original.remote_id,
                url=original.url,
                media_kind=kind,
                metadata=metadata,
                original_filename=staged.original_name,
                thumbnail_remote_id=thumbnail.remote_id if thumbnail else None,
                thumbnail_url=thumbnail.url if thumbnail else None,
            )
            logger.info("ingest_succeeded", remote_id=record.remote_id, has_thumbnail=thumbnail is not None)
            return record
        except GalleryError as exc:
            logger.warning("ingest_failed", stage=stage.value, error=str(exc), reason=type(exc).__name__)
            raise IngestError(staged.original_name, stage, exc) from exc
        except Exception as exc:
            logger.exception("ingest_unexpected_error", stage=stage.value)
            raise IngestError(staged.original_name, stage, exc) from exc
        finally:
            self.staging.discard(staged.path)
            if thumbnail_path is not None:
                self.staging.discard(thumbnail_path)

    def _enter(self, logger: Any, stage: IngestStage) -> IngestStage:
        logger.debug("ingest_stage_entered", stage=stage.value)
        return stage

    async def _inspect(self, staged: StagedFile, kind: MediaKind, logger: Any) -> Metadata:
        try:
            return await asyncio.to_thread(
                self.inspector,
                staged.path,
                kind,
                timeout_s=self.settings.inspect_timeout_s,
                ffprobe_bin=self.settings.ffprobe_binary,
            )
        except InspectionFailure as exc:
            logger.warning("inspection_degraded", error=str(exc), reason=type(exc).__name__)
        except Exception:
            logger.exception("inspection_crashed")
        return empty_metadata(kind)

    async def _thumbnail(
        self,
        staged: StagedFile,
        kind: MediaKind,
        metadata: Metadata,
        logger: Any,
    ) -> Optional[Path]:
        duration_hint = metadata.duration_seconds if isinstance(metadata, VideoMetadata) else None
        try:
            return await asyncio.to_thread(
                self.thumbnailer,
                staged.path,
                kind,
                out_dir=self.staging.root,
                size=self.settings.thumbnail_size,
                quality=self.settings.thumbnail_quality,
                position=self.settings.video_thumbnail_position,
                duration_s=float(duration_hint) if duration_hint else None,
                timeout_s=self.settings.thumbnail_timeout_s,
                ffmpeg_bin=self.settings.ffmpeg_binary,
                ffprobe_bin=self.settings.ffprobe_binary,
            )
        except ThumbnailFailure as exc:
            logger.warning("thumbnail_skipped", error=str(exc))
        except Exception:
            logger.exception("thumbnail_crashed")
        return None

    async def _upload_original(self, staged: StagedFile, kind: MediaKind) -> StoredObject:
        try:
            return await self.gateway.put(staged.path, self.settings.original_folder, kind=kind)
        except StorageError as exc:
            raise UploadOriginalFailure(f"upload of {staged.original_name} failed: {exc}") from exc

    async def _upload_thumbnail(self, thumbnail_path: Path) -> StoredObject:
        try:
            return await self.gateway.put(thumbnail_path, self.settings.thumbnail_folder, kind=MediaKind.image)
        except StorageError as exc:
            raise UploadThumbnailFailure(f"thumbnail upload failed: {exc}") from exc


__all__ = ["IngestionOrchestrator", "Inspector", "Thumbnailer"]
