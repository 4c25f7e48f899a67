"""Regenerate missing thumbnails for photos seen in the gallery.

The reconciler claims photo ids once per session, hands them to a
regenerator in fixed-size batches on a single background worker and merges
the results back into the feed. Failed ids are released so a later page load
can request them again.
"""

from __future__ import annotations

import io
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from PIL import Image, ImageOps

from photo_diary.config import Settings
from photo_diary.derivatives import DerivativeEncoder
from photo_diary.errors import MetadataStoreError, ObjectStoreError, ReconcileError
from photo_diary.metadata_store import MetadataStore
from photo_diary.object_store import ObjectStore
from photo_diary.photo import DerivativePaths, Photo, Variant
from photo_diary.update_queue import UpdateQueue
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "backfill"})

REGENERATED_URL_TTL_SECONDS = 30 * 24 * 3600


@dataclass(frozen=True)
class RegeneratedDerivatives:
    """Fresh paths and display URLs for one regenerated photo."""

    photo_id: str
    thumbnail_url: str | None = None
    medium_url: str | None = None
    thumbnail_path: str | None = None
    medium_path: str | None = None
    expires_at: float | None = None

    def paths(self) -> DerivativePaths:
        return DerivativePaths(thumbnail=self.thumbnail_path, medium=self.medium_path)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RegeneratedDerivatives":
        expires_at = payload.get("expires_at")
        return cls(
            photo_id=str(payload["photo_id"]),
            thumbnail_url=payload.get("thumbnail_url") or None,
            medium_url=payload.get("medium_url") or None,
            thumbnail_path=payload.get("thumbnail_path") or None,
            medium_path=payload.get("medium_path") or None,
            expires_at=float(expires_at) if expires_at is not None else None,
        )


class DerivativeRegenerator(Protocol):
    """Remote-style regeneration call; raises :class:`ReconcileError` on failure."""

    def regenerate(self, owner_id: str, photo_ids: Sequence[str]) -> list[RegeneratedDerivatives]: ...


class LocalDerivativeRegenerator:
    """Rebuild missing thumbnail (and medium) derivatives from the best stored source."""

    def __init__(
        self,
        metadata: MetadataStore,
        objects: ObjectStore,
        encoder: DerivativeEncoder,
        *,
        url_ttl_seconds: int = REGENERATED_URL_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._metadata = metadata
        self._objects = objects
        self._encoder = encoder
        self._url_ttl = int(url_ttl_seconds)
        self._clock = clock

    def regenerate(self, owner_id: str, photo_ids: Sequence[str]) -> list[RegeneratedDerivatives]:
        if not photo_ids:
            return []
        try:
            photos = self._metadata.get_many(owner_id, photo_ids)
        except MetadataStoreError as exc:
            raise ReconcileError(f"cannot load rows for {owner_id}: {exc}") from exc

        LOGGER.info("regenerate_start", extra={"owner_id": owner_id, "requested": len(photo_ids), "found": len(photos)})
        results: list[RegeneratedDerivatives] = []
        for photo in photos:
            try:
                result = self._regenerate_one(photo)
            except (ObjectStoreError, MetadataStoreError, Image.DecompressionBombError, OSError, ValueError) as exc:
                LOGGER.warning("regenerate_row_failed", extra={"photo_id": photo.id, "error": str(exc)})
                continue
            if result is not None:
                results.append(result)
        LOGGER.info("regenerate_done", extra={"owner_id": owner_id, "results": len(results)})
        return results

    def _load_source(self, path: str) -> Image.Image:
        data = self._objects.get(path)
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            oriented = ImageOps.exif_transpose(source)
            return oriented.convert("RGB") if oriented.mode != "RGB" else oriented.copy()

    def _url(self, path: str | None) -> str | None:
        if not path:
            return None
        if self._objects.is_public:
            return self._objects.public_url(path)
        return self._objects.sign_url(path, self._url_ttl)

    def _regenerate_one(self, photo: Photo) -> RegeneratedDerivatives | None:
        existing = photo.derivatives
        source_path = existing.original or existing.medium
        if source_path is None:
            LOGGER.warning("regenerate_source_missing", extra={"photo_id": photo.id})
            return None

        bitmap = self._load_source(source_path)
        targets = [Variant.THUMBNAIL] if existing.thumbnail is None else []
        if existing.medium is None:
            targets.append(Variant.MEDIUM)

        written: dict[Variant, str] = {}
        for variant in targets:
            encoded = self._encoder.encode_variant(bitmap, photo.owner_id, photo.id, variant)
            self._objects.put(
                encoded.path,
                encoded.data,
                encoded.content_type,
                self._encoder.config.cache_control,
                checksum=encoded.checksum,
            )
            written[variant] = encoded.path

        updated = self._metadata.update_derivatives(
            photo.owner_id,
            photo.id,
            DerivativePaths(thumbnail=written.get(Variant.THUMBNAIL), medium=written.get(Variant.MEDIUM)),
        )
        if updated is None:
            # Row deleted while regenerating.
            self._objects.remove(list(written.values()))
            return None

        paths = updated.derivatives
        return RegeneratedDerivatives(
            photo_id=photo.id,
            thumbnail_url=self._url(paths.thumbnail),
            medium_url=self._url(paths.medium),
            thumbnail_path=paths.thumbnail,
            medium_path=paths.medium,
            expires_at=None if self._objects.is_public else self._clock() + self._url_ttl,
        )


class CeleryDerivativeRegenerator:
    """Dispatch regeneration to the Celery worker and wait for its answer."""

    def __init__(self, *, timeout_seconds: float = 120.0, queue: str | None = None, task=None) -> None:
        self._timeout = timeout_seconds
        self._queue = queue
        self._task = task

    def _resolve_task(self):
        if self._task is None:
            from photo_diary.task_queue import regenerate_derivatives

            self._task = regenerate_derivatives
        return self._task

    def regenerate(self, owner_id: str, photo_ids: Sequence[str]) -> list[RegeneratedDerivatives]:
        task = self._resolve_task()
        options: dict[str, Any] = {"queue": self._queue} if self._queue else {}
        try:
            async_result = task.apply_async(args=[owner_id, list(photo_ids)], **options)
            payload = async_result.get(timeout=self._timeout)
        except Exception as exc:  # remote task errors are re-raised with arbitrary types
            raise ReconcileError(f"regenerate task failed for {owner_id}: {exc}") from exc
        try:
            return [RegeneratedDerivatives.from_dict(item) for item in payload or []]
        except (KeyError, TypeError, ValueError) as exc:
            raise ReconcileError(f"malformed regenerate payload: {exc}") from exc


class BackfillReconciler:
    """Request thumbnails for photos observed without one, at most once per session."""

    def __init__(
        self,
        regenerator: DerivativeRegenerator,
        *,
        on_merge: Callable[[list[RegeneratedDerivatives]], object] | None = None,
        updates: UpdateQueue | None = None,
        batch_size: int = 20,
    ) -> None:
        self._regenerator = regenerator
        self._on_merge = on_merge
        self._updates = updates or UpdateQueue()
        self._batch_size = max(1, int(batch_size))
        self._requested: set[str] = set()
        self._completed: set[str] = set()
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="photo-backfill")

    @property
    def requested(self) -> frozenset[str]:
        return self._updates.call(lambda: frozenset(self._requested))

    @property
    def completed(self) -> frozenset[str]:
        return self._updates.call(lambda: frozenset(self._completed))

    def set_merge_callback(self, on_merge: Callable[[list[RegeneratedDerivatives]], object] | None) -> None:
        self._on_merge = on_merge

    def _claim(self, photos: Iterable[Photo]) -> list[tuple[str, list[str]]]:
        candidates = list(photos)

        def apply() -> dict[str, list[str]]:
            claimed: dict[str, list[str]] = {}
            for photo in candidates:
                if not photo.needs_backfill:
                    continue
                if photo.id in self._requested or photo.id in self._completed:
                    continue
                self._requested.add(photo.id)
                claimed.setdefault(photo.owner_id, []).append(photo.id)
            return claimed

        batches: list[tuple[str, list[str]]] = []
        for owner_id, ids in self._updates.call(apply).items():
            for start in range(0, len(ids), self._batch_size):
                batches.append((owner_id, ids[start : start + self._batch_size]))
        return batches

    def _settle(self, photo_ids: Sequence[str], done: set[str]) -> None:
        for photo_id in photo_ids:
            self._requested.discard(photo_id)
            if photo_id in done:
                self._completed.add(photo_id)

    def _run_batch(self, owner_id: str, photo_ids: list[str]) -> int:
        """Regenerate one batch; ids that did not complete are released for a later pass."""

        done: set[str] = set()
        try:
            results = self._regenerator.regenerate(owner_id, photo_ids)
            if results and self._on_merge is not None:
                self._on_merge(results)
            done = {result.photo_id for result in results if result.thumbnail_path or result.thumbnail_url}
        except ReconcileError as exc:
            LOGGER.warning(
                "backfill_batch_failed",
                extra={"owner_id": owner_id, "photo_ids": photo_ids, "error": str(exc)},
            )
            return 0
        except Exception as exc:
            # Runs on the background worker, whose futures nobody awaits.
            LOGGER.error(
                "backfill_batch_failed",
                extra={"owner_id": owner_id, "photo_ids": photo_ids, "error": repr(exc)},
                exc_info=True,
            )
            return 0
        finally:
            self._updates.call(self._settle, photo_ids, done)
        LOGGER.info(
            "backfill_batch_merged",
            extra={"owner_id": owner_id, "requested": len(photo_ids), "merged": len(done)},
        )
        return len(done)

    def observe(self, photos: Iterable[Photo]) -> list[Future]:
        """Schedule regeneration for newly observed photos on the background worker."""

        return [self._worker.submit(self._run_batch, owner_id, ids) for owner_id, ids in self._claim(photos)]

    def run_pass(self, photos: Iterable[Photo]) -> int:
        """Synchronous variant of :meth:`observe`; returns the number of photos merged."""

        return sum(self._run_batch(owner_id, ids) for owner_id, ids in self._claim(photos))

    def close(self) -> None:
        self._worker.shutdown(wait=True)


def build_regenerator(
    settings: Settings,
    metadata: MetadataStore,
    objects: ObjectStore,
    encoder: DerivativeEncoder | None = None,
) -> DerivativeRegenerator:
    if settings.backfill.use_celery:
        return CeleryDerivativeRegenerator(
            timeout_seconds=settings.backfill.regenerate_timeout_seconds,
            queue=settings.queues.backfill_queue,
        )
    return LocalDerivativeRegenerator(metadata, objects, encoder or DerivativeEncoder(settings.derivatives))


__all__ = [
    "REGENERATED_URL_TTL_SECONDS",
    "RegeneratedDerivatives",
    "DerivativeRegenerator",
    "LocalDerivativeRegenerator",
    "CeleryDerivativeRegenerator",
    "BackfillReconciler",
    "build_regenerator",
]
