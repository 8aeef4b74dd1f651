from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from gallery.core.db import Base
from gallery.ingest.models import MediaKind


class ItemStatus(str, enum.Enum):
    draft = "draft"
    published = "published"
    archived = "archived"


class GalleryItem(Base):
    __tablename__ = "gallery_items"
    __table_args__ = (Index("ix_gallery_items_album_id", "album_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    album_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    media_kind: Mapped[MediaKind] = mapped_column(Enum(MediaKind), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    remote_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    thumbnail_remote_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    media_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    original_filename: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[ItemStatus] = mapped_column(Enum(ItemStatus), default=ItemStatus.published, nullable=False)
    is_featured: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class OrphanedObject(Base):
    """A remote object whose deletion soft-failed and awaits reconciliation."""

    __tablename__ = "orphaned_objects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    remote_id: Mapped[str] = mapped_column(String(512), nullable=False)
    media_kind: Mapped[MediaKind] = mapped_column(Enum(MediaKind), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = ["Base", "GalleryItem", "ItemStatus", "OrphanedObject"]
