from __future__ import annotations

import io
import logging
from datetime import datetime

import pytest
from PIL import Image

from conftest import START, UTC, make_jpeg
from photo_diary.capture import (
    CaptureNormalizer,
    RawFile,
    extract_capture_time,
    is_heic,
    parse_exif_datetime,
)
from photo_diary.errors import CaptureDecodeError


def test_is_heic_detects_mime_extension_and_brand() -> None:
    assert is_heic(RawFile("a.bin", b"", content_type="image/heic"))
    assert is_heic(RawFile("a.bin", b"", content_type="image/vnd.android.heic"))
    assert is_heic(RawFile("IMG_0001.HEIC", b""))
    assert is_heic(RawFile("upload", b"\x00\x00\x00\x18ftypheic\x00\x00"))
    assert not is_heic(RawFile("photo.jpg", make_jpeg((10, 10)), content_type="image/jpeg"))


def test_parse_exif_datetime_rejects_bad_values() -> None:
    now = START
    assert parse_exif_datetime("2023:05:01 10:00:00", UTC, now=now) == datetime(2023, 5, 1, 10, tzinfo=UTC).timestamp()
    assert parse_exif_datetime(b"2023:05:01 10:00:00\x00", UTC, now=now) is not None
    assert parse_exif_datetime("1989:12:31 23:59:59", UTC, now=now) is None
    assert parse_exif_datetime("2030:01:01 00:00:00", UTC, now=now) is None
    assert parse_exif_datetime("0000:00:00 00:00:00", UTC, now=now) is None
    assert parse_exif_datetime(None, UTC, now=now) is None


class _FakeExif(dict):
    def __init__(self, ifd0: dict, exif_ifd: dict) -> None:
        super().__init__(ifd0)
        self._exif_ifd = exif_ifd

    def get_ifd(self, tag):
        return self._exif_ifd


class _FakeImage:
    def __init__(self, exif: _FakeExif) -> None:
        self._exif = exif

    def getexif(self):
        return self._exif


def test_extract_capture_time_prefers_original_then_digitized_then_modified() -> None:
    original = "2023:01:01 08:00:00"
    digitized = "2023:02:02 08:00:00"
    modified = "2023:03:03 08:00:00"

    both = _FakeImage(_FakeExif({306: modified}, {36867: original, 36868: digitized}))
    assert extract_capture_time(both, UTC, now=START) == datetime(2023, 1, 1, 8, tzinfo=UTC).timestamp()

    digitized_only = _FakeImage(_FakeExif({306: modified}, {36868: digitized}))
    assert extract_capture_time(digitized_only, UTC, now=START) == datetime(2023, 2, 2, 8, tzinfo=UTC).timestamp()

    # An invalid original falls through to the next candidate.
    bad_original = _FakeImage(_FakeExif({306: modified}, {36867: "garbage"}))
    assert extract_capture_time(bad_original, UTC, now=START) == datetime(2023, 3, 3, 8, tzinfo=UTC).timestamp()


def test_normalize_jpeg_reads_capture_time(clock) -> None:
    normalizer = CaptureNormalizer(UTC, clock=clock)
    raw = RawFile("photo.jpg", make_jpeg((640, 480), exif_datetime="2023:05:01 10:00:00"), "image/jpeg")

    result = normalizer.normalize(raw)

    assert result.bitmap.mode == "RGB"
    assert result.bitmap.size == (640, 480)
    assert result.captured_at == datetime(2023, 5, 1, 10, tzinfo=UTC).timestamp()
    assert result.source_format == "jpeg"
    assert result.converted is False


def test_normalize_png_with_alpha_converts_to_rgb(clock) -> None:
    buffer = io.BytesIO()
    Image.new("RGBA", (32, 16), (10, 20, 30, 128)).save(buffer, format="PNG")

    result = CaptureNormalizer(UTC, clock=clock).normalize(RawFile("scan.png", buffer.getvalue()))

    assert result.bitmap.mode == "RGB"
    assert result.captured_at is None


def test_normalize_undecodable_raises_capture_error(clock) -> None:
    with pytest.raises(CaptureDecodeError) as excinfo:
        CaptureNormalizer(UTC, clock=clock).normalize(RawFile("broken.heic", b"not an image", "image/heic"))

    assert excinfo.value.retryable is False


def test_oversized_image_raises_capture_error(clock, monkeypatch) -> None:
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

    with pytest.raises(CaptureDecodeError) as excinfo:
        CaptureNormalizer(UTC, clock=clock).normalize(RawFile("huge.jpg", make_jpeg((320, 240)), "image/jpeg"))

    assert isinstance(excinfo.value.__cause__, Image.DecompressionBombError)


def test_normalize_logs_file_name_at_debug(clock, caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="photo_diary.capture"):
        CaptureNormalizer(UTC, clock=clock).normalize(RawFile("photo.jpg", make_jpeg((64, 48)), "image/jpeg"))

    record = next(record for record in caplog.records if record.getMessage() == "capture_normalized")
    assert record.file_name == "photo.jpg"
