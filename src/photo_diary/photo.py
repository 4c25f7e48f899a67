"""Photo domain types shared by the upload, gallery, and backfill layers."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class BodyRegion(str, Enum):
    """Closed set of body locations a photo can be tagged with."""

    FACE = "face"
    NECK = "neck"
    ARMS = "arms"
    HANDS = "hands"
    LEGS = "legs"
    FEET = "feet"
    TORSO = "torso"
    BACK = "back"


class Variant(str, Enum):
    """Logical derivative slots stored for every photo."""

    THUMBNAIL = "thumbnail"
    MEDIUM = "medium"
    ORIGINAL = "original"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class DerivativePaths:
    """Stored object paths for the three derivative slots; ``None`` when absent."""

    thumbnail: str | None = None
    medium: str | None = None
    original: str | None = None

    def get(self, variant: Variant) -> str | None:
        return getattr(self, variant.value)

    def present(self) -> list[str]:
        """Return every populated path, thumbnail first, without duplicates."""

        seen: list[str] = []
        for variant in Variant:
            path = self.get(variant)
            if path and path not in seen:
                seen.append(path)
        return seen

    def fill_missing(self, other: "DerivativePaths") -> "DerivativePaths":
        """Return a copy where empty slots take the value from ``other``.

        Populated slots are never overwritten; written derivatives are immutable.
        """

        return DerivativePaths(
            thumbnail=self.thumbnail or other.thumbnail,
            medium=self.medium or other.medium,
            original=self.original or other.original,
        )


@dataclass(frozen=True)
class Photo:
    """A stored photo row as seen by the pipeline."""

    id: str
    owner_id: str
    body_region: BodyRegion
    derivatives: DerivativePaths
    uploaded_at: float
    captured_at: float | None = None
    notes: str | None = None

    @property
    def display_timestamp(self) -> float:
        """Capture time when known, otherwise the server upload time."""

        return self.captured_at if self.captured_at is not None else self.uploaded_at

    @property
    def sort_key(self) -> tuple[float, float, str]:
        """Composite key giving a total order over photos."""

        return (self.display_timestamp, self.uploaded_at, self.id)

    @property
    def is_complete(self) -> bool:
        return self.derivatives.thumbnail is not None and self.derivatives.medium is not None

    @property
    def needs_backfill(self) -> bool:
        return self.derivatives.thumbnail is None

    def with_derivatives(self, paths: DerivativePaths) -> "Photo":
        return replace(self, derivatives=self.derivatives.fill_missing(paths))


@dataclass(frozen=True)
class PhotoFilter:
    """Optional narrowing of an owner's photo set."""

    body_region: BodyRegion | None = None

    def matches(self, photo: Photo) -> bool:
        return self.body_region is None or photo.body_region == self.body_region


__all__ = ["BodyRegion", "Variant", "SortDirection", "DerivativePaths", "Photo", "PhotoFilter"]
