from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gallery.core.logging import get_logger
from gallery.db.models import GalleryItem, ItemStatus, OrphanedObject
from gallery.ingest.models import BatchReport, MediaKind, MediaRecord, StagedFile

from .gateway import DeleteResult, StorageGateway

if TYPE_CHECKING:
    from .ingest_service import IngestionOrchestrator


@dataclass(slots=True, frozen=True)
class DeletionOutcome:
    item_id: int
    original: DeleteResult
    thumbnail: Optional[DeleteResult] = None
    orphans_queued: int = 0

    @property
    def clean(self) -> bool:
        return self.orphans_queued == 0


@dataclass(slots=True, frozen=True)
class ReplacementOutcome:
    item: GalleryItem
    removed: DeletionOutcome


@dataclass(slots=True, frozen=True)
class ReconcileSummary:
    attempted: int
    resolved: int

    @property
    def remaining(self) -> int:
        return self.attempted - self.resolved


class GalleryService:
    """Persists ingestion results and removes items together with their remote objects."""

    def __init__(self, session: AsyncSession, gateway: StorageGateway):
        self.session = session
        self.gateway = gateway
        self.logger = get_logger(component="gallery_service")

    async def create_item(
        self,
        record: MediaRecord,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        album_id: Optional[str] = None,
        created_by: Optional[str] = None,
        status: ItemStatus = ItemStatus.published,
        is_featured: bool = False,
        tags: Sequence[str] = (),
    ) -> GalleryItem:
        item = self._build_item(
            record,
            title=title,
            description=description,
            album_id=album_id,
            created_by=created_by,
            status=status,
            is_featured=is_featured,
            tags=tags,
        )
        self.session.add(item)
        await self.session.commit()
        await self.session.refresh(item)
        self.logger.info("gallery_item_created", item_id=item.id, remote_id=item.remote_id)
        return item

    async def create_items(
        self,
        report: BatchReport,
        *,
        album_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> List[GalleryItem]:
        """Persist every succeeded record of a batch in one transaction, in input order."""
        items = [
            self._build_item(record, album_id=album_id, created_by=created_by)
            for record in report.in_input_order().succeeded
        ]
        self.session.add_all(items)
        await self.session.commit()
        for item in items:
            await self.session.refresh(item)
        self.logger.info("gallery_items_created", count=len(items), failed=len(report.failed))
        return items

    async def get_item(self, item_id: int) -> Optional[GalleryItem]:
        return await self.session.get(GalleryItem, item_id)

    async def delete_item(self, item_id: int) -> Optional[DeletionOutcome]:
        """Delete the remote original and thumbnail, then the row.

        Remote failures never block the row removal; they are queued as
        orphaned objects for ``reconcile_orphans``.
        """
        item = await self.session.get(GalleryItem, item_id)
        if item is None:
            return None

        outcome = await self._delete_remote(item)
        await self.session.delete(item)
        await self.session.commit()
        self.logger.info("gallery_item_deleted", item_id=item_id, orphans_queued=outcome.orphans_queued)
        return outcome

    async def replace_media(
        self,
        item_id: int,
        staged: StagedFile,
        orchestrator: IngestionOrchestrator,
    ) -> Optional[ReplacementOutcome]:
        """Swap the media behind an item, keeping its id, title and album.

        The new file is ingested first, so a failed ingestion leaves the item
        and its remote objects untouched. The previous remote objects are then
        deleted softly, queuing failures as orphans. Returns ``None`` without
        touching ``staged`` when the item does not exist.

        Raises:
            IngestError: the new file could not be ingested.
        """
        item = await self.session.get(GalleryItem, item_id)
        if item is None:
            return None

        record = await orchestrator.ingest(staged)
        removed = await self._delete_remote(item)

        item.media_kind = record.media_kind
        item.url = record.url
        item.remote_id = record.remote_id
        item.thumbnail_url = record.thumbnail_url
        item.thumbnail_remote_id = record.thumbnail_remote_id
        item.media_metadata = record.metadata.to_dict()
        item.original_filename = record.original_filename
        await self.session.commit()
        await self.session.refresh(item)
        self.logger.info(
            "gallery_item_media_replaced",
            item_id=item_id,
            remote_id=item.remote_id,
            orphans_queued=removed.orphans_queued,
        )
        return ReplacementOutcome(item=item, removed=removed)

    async def delete_items(self, item_ids: Iterable[int]) -> List[DeletionOutcome]:
        outcomes: List[DeletionOutcome] = []
        for item_id in item_ids:
            outcome = await self.delete_item(item_id)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def reconcile_orphans(self, limit: int = 100) -> ReconcileSummary:
        """Retry queued deletions. Resolved rows are dropped, the rest count another attempt."""
        stmt = select(OrphanedObject).order_by(OrphanedObject.id).limit(limit)
        orphans = (await self.session.execute(stmt)).scalars().all()
        resolved = 0
        for orphan in orphans:
            result = await self.gateway.delete(orphan.remote_id, kind=orphan.media_kind)
            if result.ok:
                await self.session.delete(orphan)
                resolved += 1
            else:
                orphan.attempts += 1
                orphan.last_error = result.error
        await self.session.commit()
        summary = ReconcileSummary(attempted=len(orphans), resolved=resolved)
        self.logger.info("orphans_reconciled", attempted=summary.attempted, resolved=resolved)
        return summary

    async def _delete_remote(self, item: GalleryItem) -> DeletionOutcome:
        targets: List[Tuple[str, MediaKind]] = [(item.remote_id or item.url, item.media_kind)]
        thumbnail_target = item.thumbnail_remote_id or item.thumbnail_url
        if thumbnail_target:
            targets.append((thumbnail_target, MediaKind.image))

        results: List[DeleteResult] = []
        orphans = 0
        for target, kind in targets:
            result = await self.gateway.delete(target, kind=kind)
            results.append(result)
            if result.ok:
                continue
            self.session.add(
                OrphanedObject(
                    remote_id=result.remote_id or target,
                    media_kind=result.kind,
                    reason="delete_failed",
                    last_error=result.error,
                )
            )
            orphans += 1

        return DeletionOutcome(
            item_id=item.id,
            original=results[0],
            thumbnail=results[1] if len(results) > 1 else None,
            orphans_queued=orphans,
        )

    def _build_item(
        self,
        record: MediaRecord,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        album_id: Optional[str] = None,
        created_by: Optional[str] = None,
        status: ItemStatus = ItemStatus.published,
        is_featured: bool = False,
        tags: Sequence[str] = (),
    ) -> GalleryItem:
        return GalleryItem(
            title=title or Path(record.original_filename).stem or record.original_filename,
            description=description,
            album_id=album_id,
            media_kind=record.media_kind,
            url=record.url,
            remote_id=record.remote_id,
            thumbnail_url=record.thumbnail_url,
            thumbnail_remote_id=record.thumbnail_remote_id,
            media_metadata=record.metadata.to_dict(),
            original_filename=record.original_filename,
            created_by=created_by,
            status=status,
            is_featured=is_featured,
            tags=list(tags),
        )


__all__ = ["GalleryService", "DeletionOutcome", "ReconcileSummary", "ReplacementOutcome"]
