"""Shared resize and encode helpers for derivative generation."""

from __future__ import annotations

import io

from PIL import Image
from PIL.Image import Resampling

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "thumbnailing"})

_PIL_FORMATS = {"jpeg": "JPEG", "webp": "WEBP"}
CONTENT_TYPES = {"jpeg": "image/jpeg", "webp": "image/webp"}
EXTENSIONS = {"jpeg": "jpg", "webp": "webp"}


def build_thumbnail_image(image: Image.Image, max_side: int) -> Image.Image:
    """Produce a resized copy of an image constrained to ``max_side`` pixels."""

    safe_side = max(1, int(max_side))
    resized = image.copy()
    resized.thumbnail((safe_side, safe_side), resample=Resampling.LANCZOS)
    return resized


def encode_image(image: Image.Image, fmt: str, quality: int) -> bytes:
    """Encode ``image`` to ``fmt`` (``jpeg`` or ``webp``) and return the bytes."""

    pil_format = _PIL_FORMATS.get(fmt)
    if pil_format is None:
        raise ValueError(f"Unsupported derivative format: {fmt!r}")

    buffer = io.BytesIO()
    save_kwargs: dict[str, object] = {"format": pil_format, "quality": int(quality)}
    if pil_format == "JPEG":
        save_kwargs["optimize"] = True
    else:
        save_kwargs["method"] = 4

    try:
        image.save(buffer, **save_kwargs)
    except (OSError, ValueError) as exc:
        LOGGER.error(
            "derivative_encode_error",
            extra={"format": fmt, "quality": quality, "size": image.size, "error": str(exc)},
        )
        raise
    return buffer.getvalue()


def resize_and_encode(image: Image.Image, max_side: int, fmt: str, quality: int) -> tuple[bytes, tuple[int, int]]:
    """Resize ``image`` to ``max_side`` and encode it, returning bytes and final size."""

    resized = build_thumbnail_image(image, max_side)
    return encode_image(resized, fmt, quality), resized.size


__all__ = ["CONTENT_TYPES", "EXTENSIONS", "build_thumbnail_image", "encode_image", "resize_and_encode"]
