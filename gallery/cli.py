from __future__ import annotations

import argparse
import asyncio
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from .core.config import Settings, get_settings
from .core.db import create_engine, create_schema, session_scope
from .core.logging import configure_logging, level_from_name
from .core.storage import get_storage
from .ingest.errors import GalleryError
from .ingest.inspector import inspect_media
from .ingest.models import BatchReport, MediaKind, StagedFile
from .ingest.staging import StagingStore, guess_mime_type
from .ingest.thumbnails import generate_thumbnail
from .services.batch import BatchCoordinator
from .services.gallery_service import GalleryService
from .services.gateway import DeleteStatus, StorageGateway
from .services.ingest_service import IngestionOrchestrator

console = Console()


def main(argv: Optional[list[str]] = None) -> None:
    """The main entry point for the CLI.

    Args:
        argv: The command-line arguments.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(level_from_name(settings.log_level))

    if getattr(args, "check", False):
        _run_environment_check(settings)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    args.func(args, settings)


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI.

    Returns:
        The argument parser.
    """
    parser = argparse.ArgumentParser(description="Gallery media ingestion CLI")
    parser.add_argument("--check", action="store_true", help="Validate presence of ffmpeg/ffprobe dependencies")

    subparsers = parser.add_subparsers(dest="command")

    inspect_parser = subparsers.add_parser("inspect", help="Extract metadata and print it as JSON")
    inspect_parser.add_argument("--file", required=True, help="Path to the source media file")
    inspect_parser.add_argument("--mime", help="Declared MIME type (guessed from the extension by default)")
    inspect_parser.set_defaults(func=_cmd_inspect)

    thumb_parser = subparsers.add_parser("thumb", help="Generate a thumbnail and print its path")
    thumb_parser.add_argument("--file", required=True, help="Path to the source media file")
    thumb_parser.add_argument("--mime", help="Declared MIME type (guessed from the extension by default)")
    thumb_parser.add_argument("--out-dir", default=".", help="Directory the thumbnail is written to")
    thumb_parser.set_defaults(func=_cmd_thumb)

    ingest_parser = subparsers.add_parser("ingest", help="Ingest files and upload them to remote storage")
    ingest_parser.add_argument("files", nargs="+", help="Media files to ingest; the originals are left in place")
    ingest_parser.add_argument("--concurrency", type=int, default=None, help="Parallel ingestion runs")
    ingest_parser.add_argument("--persist", action="store_true", help="Record succeeded uploads in the database")
    ingest_parser.add_argument("--album-id", help="Album reference for persisted items")
    ingest_parser.set_defaults(func=_cmd_ingest)

    delete_parser = subparsers.add_parser("delete", help="Delete a remote object by identifier or URL")
    delete_parser.add_argument("target", help="Remote identifier or a previously issued URL")
    delete_parser.add_argument("--kind", choices=[kind.value for kind in MediaKind], help="Resource kind")
    delete_parser.set_defaults(func=_cmd_delete)

    reconcile_parser = subparsers.add_parser("reconcile", help="Retry deletion of orphaned remote objects")
    reconcile_parser.add_argument("--limit", type=int, default=100)
    reconcile_parser.set_defaults(func=_cmd_reconcile)

    sweep_parser = subparsers.add_parser("sweep", help="Remove stale files from the staging area")
    sweep_parser.add_argument("--older-than", type=float, default=3600.0, help="Age in seconds")
    sweep_parser.set_defaults(func=_cmd_sweep)
    return parser


def _cmd_inspect(args: argparse.Namespace, settings: Settings) -> None:
    """Extract metadata and print it as JSON.

    Args:
        args: The command-line arguments.
        settings: The runtime settings.
    """
    media_path = _existing_file(args.file)
    kind = _kind_for(media_path, args.mime)
    try:
        metadata = inspect_media(
            media_path,
            kind,
            timeout_s=settings.inspect_timeout_s,
            ffprobe_bin=settings.ffprobe_binary,
        )
    except GalleryError as exc:
        console.print(f"[red]Inspection failed:[/] {exc}")
        sys.exit(3)
    console.print_json(data={"media_kind": kind.value, "metadata": metadata.to_dict()})


def _cmd_thumb(args: argparse.Namespace, settings: Settings) -> None:
    """Generate a thumbnail and print its path.

    Args:
        args: The command-line arguments.
        settings: The runtime settings.
    """
    media_path = _existing_file(args.file)
    kind = _kind_for(media_path, args.mime)
    try:
        output = generate_thumbnail(
            media_path,
            kind,
            out_dir=Path(args.out_dir).expanduser().resolve(),
            size=settings.thumbnail_size,
            quality=settings.thumbnail_quality,
            position=settings.video_thumbnail_position,
            timeout_s=settings.thumbnail_timeout_s,
            ffmpeg_bin=settings.ffmpeg_binary,
            ffprobe_bin=settings.ffprobe_binary,
        )
    except GalleryError as exc:
        console.print(f"[red]Thumbnail failed:[/] {exc}")
        sys.exit(3)
    console.print(f"[green]Thumbnail written to {output}[/]")


def _cmd_ingest(args: argparse.Namespace, settings: Settings) -> None:
    """Stage copies of the files, run the batch and print a summary.

    Args:
        args: The command-line arguments.
        settings: The runtime settings.
    """
    staging = StagingStore(settings.staging_dir, max_bytes=settings.max_upload_size_bytes)
    gateway = StorageGateway(get_storage(settings), settings)
    orchestrator = IngestionOrchestrator(settings, gateway, staging)
    coordinator = BatchCoordinator(orchestrator, max_concurrency=settings.batch_max_concurrency)

    staged: List[StagedFile] = []
    for name in args.files:
        try:
            staged.append(staging.stage_path(_existing_file(name)))
        except GalleryError as exc:
            console.print(f"[yellow]Skipping {name}:[/] {exc}")

    report = asyncio.run(coordinator.ingest_all(staged, args.concurrency)).in_input_order()
    _print_report(report)

    if args.persist and report.succeeded:
        items = asyncio.run(_persist(settings, gateway, report, album_id=args.album_id))
        console.print(f"[green]Recorded {len(items)} gallery item(s).[/]")

    if report.failed:
        sys.exit(4)


async def _persist(settings: Settings, gateway: StorageGateway, report: BatchReport, *, album_id: Optional[str]):
    engine = create_engine(settings)
    await create_schema(engine)
    await engine.dispose()
    async with session_scope(settings) as session:
        return await GalleryService(session, gateway).create_items(report, album_id=album_id)


def _cmd_delete(args: argparse.Namespace, settings: Settings) -> None:
    """Delete a remote object and print the soft result.

    Args:
        args: The command-line arguments.
        settings: The runtime settings.
    """
    gateway = StorageGateway(get_storage(settings), settings)
    kind = MediaKind(args.kind) if args.kind else None
    result = asyncio.run(gateway.delete(args.target, kind=kind))
    colour = "red" if result.status is DeleteStatus.failed else "green"
    console.print(f"[{colour}]{result.status.value}[/] {result.remote_id or args.target}")
    if result.error:
        console.print(f"[dim]{result.error}[/]")


def _cmd_reconcile(args: argparse.Namespace, settings: Settings) -> None:
    """Retry deletion of queued orphaned objects.

    Args:
        args: The command-line arguments.
        settings: The runtime settings.
    """
    gateway = StorageGateway(get_storage(settings), settings)

    async def run():
        engine = create_engine(settings)
        await create_schema(engine)
        await engine.dispose()
        async with session_scope(settings) as session:
            return await GalleryService(session, gateway).reconcile_orphans(limit=args.limit)

    summary = asyncio.run(run())
    console.print(f"Resolved {summary.resolved} of {summary.attempted} orphaned object(s).")


def _cmd_sweep(args: argparse.Namespace, settings: Settings) -> None:
    staging = StagingStore(settings.staging_dir)
    removed = staging.sweep(args.older_than)
    console.print(f"Removed {removed} stale staged file(s).")


def _print_report(report: BatchReport) -> None:
    console.rule(f"[bold]{report.summary()}")
    if report.succeeded:
        table = Table("File", "Kind", "URL", "Thumbnail")
        for record in report.succeeded:
            table.add_row(
                record.original_filename,
                record.media_kind.value,
                record.url,
                record.thumbnail_url or "-",
            )
        console.print(table)
    if report.failed:
        table = Table("File", "Stage", "Reason", "Message", title="Failed")
        for error in report.failed:
            table.add_row(error.original_filename, error.stage.value, error.reason, str(error.cause))
        console.print(table)


def _existing_file(name: str) -> Path:
    media_path = Path(name).expanduser().resolve()
    if not media_path.is_file():
        console.print(f"[red]File not found: {media_path}[/]")
        sys.exit(2)
    return media_path


def _kind_for(media_path: Path, mime_type: Optional[str]) -> MediaKind:
    declared = mime_type or guess_mime_type(media_path.name)
    try:
        return MediaKind.from_mime_type(declared)
    except GalleryError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(2)


def _run_environment_check(settings: Settings) -> None:
    """Check for the presence of required external dependencies."""
    checks = {
        "ffmpeg": [settings.ffmpeg_binary, "-version"],
        "ffprobe": [settings.ffprobe_binary, "-version"],
    }
    results = {}
    for label, cmd in checks.items():
        if shutil.which(cmd[0]) is None:
            results[label] = False
            continue
        try:
            subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=True, timeout=10)
            results[label] = True
        except (OSError, subprocess.SubprocessError):
            results[label] = False

    console.rule("[bold]Environment Check")
    for label, ok in results.items():
        console.print(f"[bold]{label}[/]: {'✅' if ok else '❌'}")

    if not all(results.values()):
        console.print("[red]Missing dependencies detected. Video inspection and thumbnails will degrade.[/]")
        sys.exit(1)
    console.print("[green]Environment looks good![/]")


if __name__ == "__main__":
    main()
