"""Pure derivative encoder: one bitmap in, three stored resolutions out."""

from __future__ import annotations

from dataclasses import dataclass

from PIL import Image

from photo_diary.config import DerivativeConfig
from photo_diary.hasher import compute_content_hash
from photo_diary.photo import DerivativePaths, Variant
from photo_diary.thumbnailing import CONTENT_TYPES, EXTENSIONS, encode_image, resize_and_encode


@dataclass(frozen=True)
class EncodedDerivative:
    variant: Variant
    path: str
    data: bytes
    content_type: str
    width: int
    height: int
    checksum: str


@dataclass(frozen=True)
class EncodedDerivatives:
    thumbnail: EncodedDerivative
    medium: EncodedDerivative
    original: EncodedDerivative

    def __iter__(self):
        return iter((self.thumbnail, self.medium, self.original))

    def get(self, variant: Variant) -> EncodedDerivative:
        return getattr(self, variant.value)


def derivative_prefix(owner_id: str, photo_id: str) -> str:
    """Object prefix under which every derivative of a photo lives."""

    return f"{owner_id}/{photo_id}/"


def derivative_path(owner_id: str, photo_id: str, variant: Variant, extension: str) -> str:
    return f"{derivative_prefix(owner_id, photo_id)}{variant.value}.{extension}"


class DerivativeEncoder:
    """Produce thumbnail, medium and original encodings with deterministic paths.

    Thumbnail and medium are size-capped lossy encodings; the original keeps
    full resolution as high-quality JPEG for export.
    """

    def __init__(self, config: DerivativeConfig | None = None) -> None:
        self._config = config or DerivativeConfig()

    @property
    def config(self) -> DerivativeConfig:
        return self._config

    def _build(
        self,
        variant: Variant,
        owner_id: str,
        photo_id: str,
        fmt: str,
        data: bytes,
        size: tuple[int, int],
    ) -> EncodedDerivative:
        return EncodedDerivative(
            variant=variant,
            path=derivative_path(owner_id, photo_id, variant, EXTENSIONS[fmt]),
            data=data,
            content_type=CONTENT_TYPES[fmt],
            width=size[0],
            height=size[1],
            checksum=compute_content_hash(data),
        )

    def encode_variant(self, bitmap: Image.Image, owner_id: str, photo_id: str, variant: Variant) -> EncodedDerivative:
        cfg = self._config
        if variant is Variant.THUMBNAIL:
            data, size = resize_and_encode(bitmap, cfg.thumbnail_max_side, cfg.format, cfg.thumbnail_quality)
            return self._build(variant, owner_id, photo_id, cfg.format, data, size)
        if variant is Variant.MEDIUM:
            data, size = resize_and_encode(bitmap, cfg.medium_max_side, cfg.format, cfg.medium_quality)
            return self._build(variant, owner_id, photo_id, cfg.format, data, size)
        rgb = bitmap if bitmap.mode == "RGB" else bitmap.convert("RGB")
        data = encode_image(rgb, "jpeg", cfg.original_quality)
        return self._build(variant, owner_id, photo_id, "jpeg", data, rgb.size)

    def encode(self, bitmap: Image.Image, owner_id: str, photo_id: str) -> EncodedDerivatives:
        return EncodedDerivatives(
            thumbnail=self.encode_variant(bitmap, owner_id, photo_id, Variant.THUMBNAIL),
            medium=self.encode_variant(bitmap, owner_id, photo_id, Variant.MEDIUM),
            original=self.encode_variant(bitmap, owner_id, photo_id, Variant.ORIGINAL),
        )

    def paths_for(self, owner_id: str, photo_id: str) -> DerivativePaths:
        """Return the paths :meth:`encode` would assign, without encoding."""

        lossy = EXTENSIONS[self._config.format]
        return DerivativePaths(
            thumbnail=derivative_path(owner_id, photo_id, Variant.THUMBNAIL, lossy),
            medium=derivative_path(owner_id, photo_id, Variant.MEDIUM, lossy),
            original=derivative_path(owner_id, photo_id, Variant.ORIGINAL, EXTENSIONS["jpeg"]),
        )


__all__ = [
    "EncodedDerivative",
    "EncodedDerivatives",
    "DerivativeEncoder",
    "derivative_prefix",
    "derivative_path",
]
