"""Decode camera uploads into canonical RGB bitmaps and recover capture time.

Capture metadata is read from the container as uploaded, before any format
conversion. Converting HEIC-family files to a standard raster drops embedded
EXIF, so extraction always runs on the original decode.
"""

from __future__ import annotations

import io
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, tzinfo

from PIL import ExifTags, Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from photo_diary.errors import CaptureDecodeError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "capture"})

register_heif_opener()

HEIC_MIME_TYPES: frozenset[str] = frozenset({"image/heic", "image/heif", "image/vnd.android.heic"})
HEIC_EXTENSIONS: tuple[str, ...] = (".heic", ".heif")
HEIC_BRANDS: frozenset[bytes] = frozenset({b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1"})

# DateTimeOriginal, then DateTimeDigitized, then the IFD0 modify time.
_EXIF_IFD_DATE_TAGS = (36867, 36868)
_IFD0_DATE_TAG = 306
_EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"
_EARLIEST_CAPTURE_YEAR = 1990


@dataclass(frozen=True)
class RawFile:
    """An uploaded file as handed over by the file picker or camera."""

    filename: str
    data: bytes
    content_type: str | None = None


@dataclass(frozen=True)
class NormalizedCapture:
    bitmap: Image.Image
    captured_at: float | None
    source_format: str
    converted: bool


def is_heic(raw: RawFile) -> bool:
    """Detect HEIC/HEIF input by MIME type, extension, or ISO-BMFF brand."""

    mime = (raw.content_type or "").lower()
    if mime in HEIC_MIME_TYPES or "heic" in mime or "heif" in mime:
        return True
    if raw.filename.lower().endswith(HEIC_EXTENSIONS):
        return True
    # iOS Safari sometimes sends an empty type; fall back to the ftyp box.
    header = raw.data[:12]
    return len(header) == 12 and header[4:8] == b"ftyp" and header[8:12] in HEIC_BRANDS


def parse_exif_datetime(value: object, tz: tzinfo, *, now: float | None = None) -> float | None:
    """Parse an EXIF ``YYYY:MM:DD HH:MM:SS`` stamp as local time in ``tz``.

    Returns ``None`` for malformed values, years before 1990, or future times.
    """

    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")
    if not isinstance(value, str):
        return None
    text = value.strip().rstrip("\x00")
    try:
        naive = datetime.strptime(text, _EXIF_DATE_FORMAT)
    except ValueError:
        return None
    if naive.year < _EARLIEST_CAPTURE_YEAR:
        return None
    stamp = naive.replace(tzinfo=tz).timestamp()
    if stamp > (now if now is not None else time.time()):
        return None
    return stamp


def extract_capture_time(image: Image.Image, tz: tzinfo, *, now: float | None = None) -> float | None:
    """Return the best EXIF capture timestamp of ``image`` or ``None``."""

    try:
        exif = image.getexif()
    except (AttributeError, OSError, ValueError):
        return None
    if not exif:
        return None

    try:
        exif_ifd = exif.get_ifd(ExifTags.IFD.Exif)
    except (KeyError, OSError, ValueError):
        exif_ifd = {}

    for tag in _EXIF_IFD_DATE_TAGS:
        parsed = parse_exif_datetime(exif_ifd.get(tag), tz, now=now)
        if parsed is not None:
            return parsed
    return parse_exif_datetime(exif.get(_IFD0_DATE_TAG), tz, now=now)


class CaptureNormalizer:
    """Turn a :class:`RawFile` into a canonical RGB bitmap plus capture time."""

    def __init__(self, tz: tzinfo, *, clock: Callable[[], float] = time.time) -> None:
        self._tz = tz
        self._clock = clock

    def normalize(self, raw: RawFile) -> NormalizedCapture:
        heic = is_heic(raw)
        try:
            source = Image.open(io.BytesIO(raw.data))
            source.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as exc:
            LOGGER.warning(
                "capture_decode_failed",
                extra={"file_name": raw.filename, "content_type": raw.content_type, "heic": heic, "error": str(exc)},
            )
            raise CaptureDecodeError(f"cannot decode {raw.filename}: {exc}", cause=exc) from exc

        captured_at = extract_capture_time(source, self._tz, now=self._clock())
        source_format = (source.format or "unknown").lower()

        try:
            oriented = ImageOps.exif_transpose(source)
            bitmap = oriented.convert("RGB") if oriented.mode != "RGB" else oriented.copy()
        except (Image.DecompressionBombError, OSError, ValueError) as exc:
            raise CaptureDecodeError(f"cannot convert {raw.filename}: {exc}", cause=exc) from exc
        finally:
            source.close()

        converted = heic or source_format not in {"jpeg", "png", "webp"}
        LOGGER.debug(
            "capture_normalized",
            extra={
                "file_name": raw.filename,
                "source_format": source_format,
                "converted": converted,
                "captured_at": captured_at,
                "size": bitmap.size,
            },
        )
        return NormalizedCapture(
            bitmap=bitmap,
            captured_at=captured_at,
            source_format=source_format,
            converted=converted,
        )


__all__ = [
    "RawFile",
    "NormalizedCapture",
    "CaptureNormalizer",
    "is_heic",
    "parse_exif_datetime",
    "extract_capture_time",
]
