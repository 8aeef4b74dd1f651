from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    media_kind_enum = sa.Enum("image", "video", name="mediakind")
    item_status_enum = sa.Enum("draft", "published", "archived", name="itemstatus")

    op.create_table(
        "gallery_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("album_id", sa.String(length=64), nullable=True),
        sa.Column("media_kind", media_kind_enum, nullable=False),
        sa.Column("url", sa.String(length=2048), nullable=False),
        sa.Column("remote_id", sa.String(length=512), nullable=True),
        sa.Column("thumbnail_url", sa.String(length=2048), nullable=True),
        sa.Column("thumbnail_remote_id", sa.String(length=512), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("original_filename", sa.String(length=512), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("status", item_status_enum, nullable=False, server_default="published"),
        sa.Column("is_featured", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_gallery_items_album_id", "gallery_items", ["album_id"])

    op.create_table(
        "orphaned_objects",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("remote_id", sa.String(length=512), nullable=False),
        sa.Column("media_kind", media_kind_enum, nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("orphaned_objects")
    op.drop_index("ix_gallery_items_album_id", table_name="gallery_items")
    op.drop_table("gallery_items")
    sa.Enum(name="itemstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="mediakind").drop(op.get_bind(), checkfirst=True)
