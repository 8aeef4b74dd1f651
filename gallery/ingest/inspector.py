from __future__ import annotations

import json
import math
import os
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from PIL import ExifTags, Image, UnidentifiedImageError

from gallery.core.logging import get_logger

from .errors import InspectionFailure, InspectionTimeout
from .models import ExifData, GeoLocation, ImageMetadata, MediaKind, Metadata, VideoMetadata

__all__ = [
    "inspect_media",
    "inspect_image",
    "inspect_video",
    "read_exif",
    "exif_from_tags",
    "run_ffprobe",
    "probe_duration",
    "video_metadata_from_probe",
]

logger = get_logger(component="media_inspector")

EXIF_DATETIME_FORMATS = ("%Y:%m:%d %H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y:%m:%d %H:%M:%S%z")


def inspect_media(
    path: Path,
    kind: MediaKind,
    *,
    timeout_s: float = 10.0,
    ffprobe_bin: str = "ffprobe",
) -> Metadata:
    """Extract structural (and for images, embedded) metadata from a staged file.

    Args:
        path: The staged file. Opened read-only.
        kind: The declared media kind.
        timeout_s: Deadline for the external probe used on video.
        ffprobe_bin: The ffprobe executable.

    Returns:
        ImageMetadata or VideoMetadata.

    Raises:
        InspectionFailure: the file could not be read or probed.
        InspectionTimeout: the probe exceeded ``timeout_s`` and was killed.
    """
    if kind is MediaKind.image:
        return inspect_image(path)
    return inspect_video(path, timeout_s=timeout_s, ffprobe_bin=ffprobe_bin)


def inspect_image(path: Path) -> ImageMetadata:
    size_bytes = _stat_size(path)
    try:
        # Image.open only parses the header; pixel data is never decoded here.
        with Image.open(path) as image:
            width, height = image.size
            image_format = (image.format or "").lower() or None
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise InspectionFailure(f"cannot read image header of {path.name}: {exc}") from exc

    return ImageMetadata(
        width=width,
        height=height,
        format=image_format,
        size_bytes=size_bytes,
        aspect_ratio=(width / height) if height else None,
        exif=read_exif(path),
    )


def read_exif(path: Path) -> Optional[ExifData]:
    """Best-effort EXIF extraction. Missing or corrupt blocks yield None."""
    try:
        with Image.open(path) as image:
            exif = image.getexif()
            base = dict(exif)
            exif_ifd = dict(exif.get_ifd(ExifTags.IFD.Exif))
            gps_ifd = dict(exif.get_ifd(ExifTags.IFD.GPSInfo))
        data = exif_from_tags(base, exif_ifd, gps_ifd)
    except Exception as exc:  # Pillow raises a wide range of errors on malformed EXIF
        logger.warning("exif_extraction_failed", path=str(path), error=str(exc))
        return None
    if data.is_empty():
        return None
    return data


def exif_from_tags(
    base: Mapping[int, Any],
    exif_ifd: Mapping[int, Any],
    gps_ifd: Mapping[int, Any],
) -> ExifData:
    """Map raw EXIF tag dictionaries onto ExifData.

    Args:
        base: IFD0 tags (Make, Model, DateTime...).
        exif_ifd: The Exif sub-IFD (exposure settings, capture time).
        gps_ifd: The GPS sub-IFD.

    Returns:
        The mapped ExifData; fields absent from the tags stay None.
    """
    taken_at = _parse_exif_datetime(exif_ifd.get(ExifTags.Base.DateTimeOriginal)) or _parse_exif_datetime(
        exif_ifd.get(ExifTags.Base.DateTimeDigitized)
    )
    iso = exif_ifd.get(ExifTags.Base.ISOSpeedRatings)
    if isinstance(iso, (tuple, list)):
        iso = iso[0] if iso else None

    return ExifData(
        camera_make=_clean_text(base.get(ExifTags.Base.Make)),
        camera_model=_clean_text(base.get(ExifTags.Base.Model)),
        focal_length_mm=_float_or_none(exif_ifd.get(ExifTags.Base.FocalLength)),
        aperture=_float_or_none(exif_ifd.get(ExifTags.Base.FNumber)),
        shutter_speed_seconds=_float_or_none(exif_ifd.get(ExifTags.Base.ExposureTime)),
        iso=_int_or_none(iso),
        taken_at=taken_at,
        location=_location_from_gps(gps_ifd),
    )


def _location_from_gps(gps_ifd: Mapping[int, Any]) -> Optional[GeoLocation]:
    lat = _dms_to_decimal(gps_ifd.get(ExifTags.GPS.GPSLatitude), gps_ifd.get(ExifTags.GPS.GPSLatitudeRef))
    lon = _dms_to_decimal(gps_ifd.get(ExifTags.GPS.GPSLongitude), gps_ifd.get(ExifTags.GPS.GPSLongitudeRef))
    if lat is None or lon is None:
        return None
    return GeoLocation(
        lat=lat,
        lon=lon,
        area_name=_clean_text(gps_ifd.get(ExifTags.GPS.GPSAreaInformation)),
    )


def _dms_to_decimal(value: Any, ref: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        parts: Tuple[Any, ...] = (value,)
    else:
        try:
            parts = tuple(value)
        except TypeError:
            return None
    numbers = [_float_or_none(part) for part in parts[:3]]
    if not numbers or any(number is None for number in numbers):
        return None
    degrees = numbers[0] or 0.0
    minutes = numbers[1] if len(numbers) > 1 else 0.0
    seconds = numbers[2] if len(numbers) > 2 else 0.0
    decimal = degrees + (minutes or 0.0) / 60.0 + (seconds or 0.0) / 3600.0
    ref_text = _clean_text(ref) or ""
    if ref_text.upper() in {"S", "W"}:
        decimal = -decimal
    return round(decimal, 7)


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        # GPSAreaInformation carries an 8 byte character-code prefix.
        for prefix in (b"ASCII\x00\x00\x00", b"UNICODE\x00", b"\x00" * 8):
            if value.startswith(prefix):
                value = value[len(prefix):]
                break
        value = value.decode("utf-8", errors="ignore")
    text = str(value).replace("\x00", "").strip()
    return text or None


def _parse_exif_datetime(value: Any) -> Optional[datetime]:
    text = _clean_text(value)
    if not text:
        return None
    for fmt in EXIF_DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def inspect_video(path: Path, *, timeout_s: float = 10.0, ffprobe_bin: str = "ffprobe") -> VideoMetadata:
    size_bytes = _stat_size(path)
    raw = run_ffprobe(path, timeout_s=timeout_s, ffprobe_bin=ffprobe_bin)
    return video_metadata_from_probe(raw, path=path, size_bytes=size_bytes)


def run_ffprobe(path: Path, *, timeout_s: float = 10.0, ffprobe_bin: str = "ffprobe") -> Dict[str, Any]:
    """Run ffprobe against ``path`` and return its JSON output.

    ``subprocess.run`` kills and reaps the child when the timeout expires, so
    no probe process outlives this call.
    """
    command = [
        ffprobe_bin,
        "-v",
        "error",
        "-show_format",
        "-show_streams",
        "-print_format",
        "json",
        str(path),
    ]
    logger.debug("ffprobe_run", command=command, timeout_s=timeout_s)
    try:
        proc = subprocess.run(
            command,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as exc:
        raise InspectionTimeout(str(path), timeout_s) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        raise InspectionFailure(f"ffprobe failed for {path.name}: {stderr or exc.returncode}") from exc
    except FileNotFoundError as exc:
        raise InspectionFailure(f"ffprobe executable not found: {ffprobe_bin}") from exc
    try:
        return json.loads(proc.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise InspectionFailure(f"ffprobe returned invalid JSON for {path.name}") from exc


def probe_duration(path: Path, *, timeout_s: float = 10.0, ffprobe_bin: str = "ffprobe") -> Optional[float]:
    raw = run_ffprobe(path, timeout_s=timeout_s, ffprobe_bin=ffprobe_bin)
    duration, _ = _parse_duration((raw.get("format") or {}).get("duration"))
    return duration


def video_metadata_from_probe(
    raw: Dict[str, Any],
    *,
    path: Path,
    size_bytes: Optional[int],
) -> VideoMetadata:
    """Normalise ffprobe JSON into VideoMetadata.

    Args:
        raw: The raw ffprobe JSON.
        path: The probed file; its extension is the reported container format.
        size_bytes: Size from the filesystem.

    Returns:
        The metadata. Without a video stream only ``format`` and
        ``size_bytes`` are populated.
    """
    container = path.suffix.lstrip(".").lower() or None
    stream = _first_video_stream(raw.get("streams") or [])
    if stream is None:
        logger.info("video_stream_missing", path=str(path))
        return VideoMetadata(format=container, size_bytes=size_bytes)

    format_info = raw.get("format") or {}
    duration, _ = _parse_duration(format_info.get("duration"))
    width = _int_or_none(stream.get("width"))
    height = _int_or_none(stream.get("height"))

    return VideoMetadata(
        width=width,
        height=height,
        duration_seconds=int(math.floor(duration)) if duration is not None else None,
        format=container,
        size_bytes=size_bytes,
        aspect_ratio=_display_aspect_ratio(stream.get("display_aspect_ratio"), width, height),
        codec=stream.get("codec_name") or None,
        frame_rate_fps=_frame_rate(stream),
    )


def _first_video_stream(streams: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for stream in streams:
        codec_type = stream.get("codec_type")
        if isinstance(codec_type, str) and codec_type.lower() == "video":
            return stream
    return None


def _display_aspect_ratio(value: Any, width: Optional[int], height: Optional[int]) -> Optional[str]:
    if isinstance(value, str) and ":" in value and value not in {"0:1", "N/A"}:
        return value
    if width and height:
        divisor = math.gcd(width, height)
        return f"{width // divisor}:{height // divisor}"
    return None


def _parse_duration(raw_value: Any) -> Tuple[Optional[float], Optional[str]]:
    """Parse the duration from ffprobe.

    Returns:
        A tuple containing the duration in seconds (None when unknown) and an
        optional warning code.
    """
    if raw_value in (None, "N/A", ""):
        return None, "duration_unavailable"
    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        return None, "duration_unavailable"
    if math.isnan(value) or value < 0:
        return None, "duration_unavailable"
    return value, None


def _frame_rate(stream: Dict[str, Any]) -> Optional[float]:
    for key in ("avg_frame_rate", "r_frame_rate"):
        rate = _parse_rational(stream.get(key))
        if rate is not None:
            return rate
    return None


def _parse_rational(value: Any) -> Optional[float]:
    if not value or value in {"0/0", "N/A"}:
        return None
    value = str(value)
    if "/" not in value:
        try:
            return round(float(value), 2)
        except ValueError:
            return None
    numerator_str, denominator_str = value.split("/", 1)
    try:
        numerator = float(numerator_str)
        denominator = float(denominator_str)
    except ValueError:
        return None
    if math.isclose(denominator, 0.0):
        return None
    return round(numerator / denominator, 2)


def _int_or_none(value: Any) -> Optional[int]:
    if value in (None, "N/A", ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _float_or_none(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        result = float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _stat_size(path: Path) -> int:
    try:
        return os.stat(path).st_size
    except OSError as exc:
        raise InspectionFailure(f"cannot stat {path}: {exc}") from exc
