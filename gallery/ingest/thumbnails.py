from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from gallery.core.logging import get_logger

from .errors import InspectionFailure, ThumbnailFailure
from .inspector import probe_duration
from .models import MediaKind
from .staging import unique_name

__all__ = ["generate_thumbnail", "render_cover", "THUMB_SIZE", "THUMB_QUALITY"]

THUMB_SIZE: Tuple[int, int] = (300, 200)
THUMB_QUALITY = 80

logger = get_logger(component="thumbnail_generator")


def generate_thumbnail(
    path: Path,
    kind: MediaKind,
    *,
    out_dir: Path,
    size: Tuple[int, int] = THUMB_SIZE,
    quality: int = THUMB_QUALITY,
    position: float = 0.1,
    duration_s: Optional[float] = None,
    timeout_s: float = 30.0,
    ffmpeg_bin: str = "ffmpeg",
    ffprobe_bin: str = "ffprobe",
) -> Path:
    """Produce a fixed-size JPEG preview for a staged file.

    Images are resized to cover ``size`` and centre-cropped. Videos are sampled
    at ``position`` of their duration (first decodable frame when the duration
    is unknown) and then go through the same cover/crop step.

    Raises:
        ThumbnailFailure: the preview could not be produced. No partial file
            is left behind.
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    output_path = out_dir / unique_name("thumb", ".jpg")
    try:
        if kind is MediaKind.image:
            render_cover(path, output_path, size=size, quality=quality)
        else:
            _render_video_thumbnail(
                path,
                output_path,
                size=size,
                quality=quality,
                position=position,
                duration_s=duration_s,
                timeout_s=timeout_s,
                ffmpeg_bin=ffmpeg_bin,
                ffprobe_bin=ffprobe_bin,
            )
    except BaseException:
        output_path.unlink(missing_ok=True)
        raise
    return output_path


def render_cover(source: Path, output_path: Path, *, size: Tuple[int, int], quality: int) -> None:
    try:
        with Image.open(source) as image:
            image = _upright(image)
            if image.mode != "RGB":
                image = image.convert("RGB")
            thumb = ImageOps.fit(image, size, method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))
            thumb.save(output_path, format="JPEG", quality=quality, optimize=True)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise ThumbnailFailure(f"cannot render preview from {source.name}: {exc}") from exc


def _upright(image: Image.Image) -> Image.Image:
    # A malformed orientation tag must not cost us the preview.
    try:
        return ImageOps.exif_transpose(image)
    except Exception as exc:
        logger.info("thumbnail_orientation_ignored", error=str(exc))
        return image


def _render_video_thumbnail(
    video_path: Path,
    output_path: Path,
    *,
    size: Tuple[int, int],
    quality: int,
    position: float,
    duration_s: Optional[float],
    timeout_s: float,
    ffmpeg_bin: str,
    ffprobe_bin: str,
) -> None:
    if duration_s is None:
        try:
            duration_s = probe_duration(video_path, timeout_s=timeout_s, ffprobe_bin=ffprobe_bin)
        except InspectionFailure as exc:
            logger.info("thumbnail_duration_unknown", path=str(video_path), error=str(exc))
            duration_s = None

    timestamp = duration_s * position if duration_s and duration_s > 0 else None
    frame_path = output_path.with_name(f"{output_path.stem}-frame.png")
    try:
        _extract_frame(video_path, timestamp, frame_path, timeout_s=timeout_s, ffmpeg_bin=ffmpeg_bin)
        render_cover(frame_path, output_path, size=size, quality=quality)
    finally:
        frame_path.unlink(missing_ok=True)


def _extract_frame(
    video_path: Path,
    timestamp: Optional[float],
    output_path: Path,
    *,
    timeout_s: float,
    ffmpeg_bin: str,
) -> None:
    command = [ffmpeg_bin, "-nostdin", "-v", "error"]
    if timestamp is not None:
        command += ["-ss", f"{max(timestamp, 0.0):.3f}"]
    command += ["-i", str(video_path), "-frames:v", "1", "-f", "image2", "-y", str(output_path)]
    try:
        subprocess.run(command, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, timeout=timeout_s)
    except subprocess.TimeoutExpired as exc:
        raise ThumbnailFailure(f"frame extraction from {video_path.name} exceeded {timeout_s:.1f}s") from exc
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.decode(errors="ignore") if isinstance(exc.stderr, bytes) else (exc.stderr or "")
        raise ThumbnailFailure(f"ffmpeg failed for {video_path.name}: {stderr.strip() or exc.returncode}") from exc
    except FileNotFoundError as exc:
        raise ThumbnailFailure(f"ffmpeg executable not found: {ffmpeg_bin}") from exc

    if not output_path.exists() or output_path.stat().st_size == 0:
        raise ThumbnailFailure(f"no decodable frame in {video_path.name}")
