"""Upload pipeline: quota, normalize, encode, put derivatives, commit metadata.

Each item walks an explicit state machine. Blob writes happen before the
metadata row, so any failure after the first put rolls back what was written;
rollback itself never raises.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import FIRST_COMPLETED, Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from enum import Enum

from photo_diary.capture import CaptureNormalizer, RawFile
from photo_diary.config import UploadConfig
from photo_diary.derivatives import DerivativeEncoder, EncodedDerivatives
from photo_diary.errors import (
    CaptureDecodeError,
    DerivativeUploadError,
    MetadataCommitError,
    MetadataStoreError,
    ObjectStoreError,
    QuotaExceeded,
    UnexpectedUploadError,
    UploadCancelled,
    UploadError,
)
from photo_diary.metadata_store import MetadataStore, NewPhotoRow
from photo_diary.object_store import ObjectStore
from photo_diary.photo import BodyRegion, DerivativePaths, Photo, Variant
from photo_diary.quota import QuotaGuard
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "upload"})


class UploadState(str, Enum):
    PENDING = "pending"
    NORMALIZING = "normalizing"
    ENCODING = "encoding"
    UPLOADING = "uploading"
    COMMITTING = "committing"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadEvent:
    item_id: str
    state: UploadState
    error: UploadError | None = None


UploadListener = Callable[[UploadEvent], None]


class CancelToken:
    """Cooperative cancellation flag checked at step boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class UploadPipeline:
    """Run one photo through the ingestion steps and return the stored :class:`Photo`."""

    def __init__(
        self,
        metadata: MetadataStore,
        objects: ObjectStore,
        quota: QuotaGuard,
        normalizer: CaptureNormalizer,
        encoder: DerivativeEncoder,
        *,
        config: UploadConfig | None = None,
        executor: Executor | None = None,
        publish: Callable[[Photo], None] | None = None,
    ) -> None:
        self._metadata = metadata
        self._objects = objects
        self._quota = quota
        self._normalizer = normalizer
        self._encoder = encoder
        self._config = config or UploadConfig()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(3, self._config.network_workers), thread_name_prefix="photo-upload"
        )
        self._publish = publish

    @property
    def config(self) -> UploadConfig:
        return self._config

    def set_publisher(self, publish: Callable[[Photo], None] | None) -> None:
        self._publish = publish

    # -- steps -----------------------------------------------------------

    def check_capacity(self, owner_id: str, in_flight: int = 0) -> int:
        """Quota check bounded by ``quota_timeout_seconds``; a timeout fails open."""

        future = self._executor.submit(self._quota.ensure_capacity, owner_id, None, in_flight)
        try:
            return future.result(timeout=self._config.quota_timeout_seconds)
        except TimeoutError:
            LOGGER.warning("quota_check_failed_open", extra={"owner_id": owner_id, "error": "timeout"})
            return 0

    def _encode(self, raw: RawFile, owner_id: str, photo_id: str, bitmap) -> EncodedDerivatives:
        try:
            return self._encoder.encode(bitmap, owner_id, photo_id)
        except (OSError, ValueError) as exc:
            raise CaptureDecodeError(f"cannot encode {raw.filename}: {exc}", cause=exc) from exc

    def _remove_late(self, path: str) -> Callable[[Future], None]:
        def _callback(future: Future) -> None:
            if future.cancelled() or future.exception() is not None:
                return
            try:
                self._objects.remove([path])
            except ObjectStoreError as exc:
                LOGGER.error("late_put_remove_failed", extra={"path": path, "error": str(exc)})
                return
            LOGGER.info("late_put_removed", extra={"path": path})

        return _callback

    def _put_all(self, encoded: EncodedDerivatives, cache_control: str | None) -> DerivativePaths:
        futures: dict[Variant, Future] = {
            item.variant: self._executor.submit(
                self._objects.put, item.path, item.data, item.content_type, cache_control, checksum=item.checksum
            )
            for item in encoded
        }
        _, not_done = wait(futures.values(), timeout=self._config.put_timeout_seconds)

        landed: dict[Variant, str] = {}
        failure: tuple[Variant, BaseException] | None = None
        for item in encoded:
            future = futures[item.variant]
            if future in not_done:
                future.cancel()
                future.add_done_callback(self._remove_late(item.path))
                error: BaseException | None = TimeoutError(f"put exceeded {self._config.put_timeout_seconds}s")
            else:
                error = future.exception()
            if error is None:
                landed[item.variant] = item.path
                continue
            if item.variant is Variant.ORIGINAL:
                LOGGER.warning("original_upload_skipped", extra={"path": item.path, "error": str(error)})
                continue
            LOGGER.warning(
                "derivative_put_failed",
                extra={"variant": item.variant.value, "path": item.path, "error": str(error)},
            )
            if failure is None:
                failure = (item.variant, error)

        if failure is not None:
            self.rollback([item.path for item in encoded])
            variant, error = failure
            raise DerivativeUploadError(variant.value, str(error), cause=error)

        return DerivativePaths(
            thumbnail=landed.get(Variant.THUMBNAIL),
            medium=landed.get(Variant.MEDIUM),
            original=landed.get(Variant.ORIGINAL),
        )

    def _revert_late_commit(self, owner_id: str, photo_id: str) -> Callable[[Future], None]:
        def _callback(future: Future) -> None:
            if future.cancelled() or future.exception() is not None:
                return
            try:
                self._metadata.delete(owner_id, photo_id)
            except MetadataStoreError as exc:
                LOGGER.error("late_commit_revert_failed", extra={"photo_id": photo_id, "error": str(exc)})
                return
            LOGGER.info("late_commit_reverted", extra={"photo_id": photo_id})

        return _callback

    def _commit(self, row: NewPhotoRow) -> Photo:
        future = self._executor.submit(self._metadata.insert, row)
        try:
            return future.result(timeout=self._config.commit_timeout_seconds)
        except TimeoutError as exc:
            if not future.cancel():
                future.add_done_callback(self._revert_late_commit(row.owner_id, row.id))
            self.rollback(row.derivatives.present())
            raise MetadataCommitError(f"metadata commit timed out for {row.id}", cause=exc) from exc
        except MetadataStoreError as exc:
            self.rollback(row.derivatives.present())
            raise MetadataCommitError(f"metadata commit failed for {row.id}: {exc}", cause=exc) from exc

    def rollback(self, paths: Sequence[str]) -> None:
        """Remove ``paths`` best-effort; failures are logged and never raised."""

        if not paths:
            return
        future = self._executor.submit(self._objects.remove, list(paths))
        try:
            future.result(timeout=self._config.remove_timeout_seconds)
        except (ObjectStoreError, TimeoutError) as exc:
            LOGGER.error("rollback_remove_failed", extra={"paths": list(paths), "error": str(exc)})

    # -- driver ----------------------------------------------------------

    def upload(
        self,
        owner_id: str,
        raw: RawFile,
        body_region: BodyRegion,
        notes: str | None = None,
        *,
        item_id: str | None = None,
        cancel: CancelToken | None = None,
        listener: UploadListener | None = None,
        check_quota: bool = True,
    ) -> Photo:
        """Ingest one file. Raises an :class:`UploadError` subclass on failure."""

        key = item_id or raw.filename

        def emit(state: UploadState, error: UploadError | None = None) -> None:
            if listener is None:
                return
            try:
                listener(UploadEvent(item_id=key, state=state, error=error))
            except Exception as exc:
                LOGGER.error("upload_listener_error", extra={"item_id": key, "error": str(exc)})

        def checkpoint(written: Sequence[str] = ()) -> None:
            if cancel is not None and cancel.cancelled:
                self.rollback(written)
                raise UploadCancelled(f"upload of {raw.filename} cancelled")

        written: list[str] = []
        try:
            checkpoint()
            if check_quota:
                self.check_capacity(owner_id)
                checkpoint()

            emit(UploadState.NORMALIZING)
            capture = self._normalizer.normalize(raw)
            checkpoint()

            emit(UploadState.ENCODING)
            photo_id = self._metadata.allocate_id()
            encoded = self._encode(raw, owner_id, photo_id, capture.bitmap)
            checkpoint()

            emit(UploadState.UPLOADING)
            paths = self._put_all(encoded, self._encoder.config.cache_control)
            written = paths.present()
            checkpoint(written)

            emit(UploadState.COMMITTING)
            photo = self._commit(
                NewPhotoRow(
                    id=photo_id,
                    owner_id=owner_id,
                    body_region=body_region,
                    derivatives=paths,
                    captured_at=capture.captured_at,
                    notes=notes,
                )
            )
        except UploadError as exc:
            LOGGER.warning(
                "upload_item_failed",
                extra={"item_id": key, "owner_id": owner_id, "reason": exc.reason, "error": str(exc)},
            )
            emit(UploadState.FAILED, exc)
            raise
        except Exception as exc:
            self.rollback(written)
            wrapped = UnexpectedUploadError(f"upload of {raw.filename} failed: {exc!r}", cause=exc)
            LOGGER.error(
                "upload_item_failed",
                extra={"item_id": key, "owner_id": owner_id, "reason": wrapped.reason, "error": repr(exc)},
            )
            emit(UploadState.FAILED, wrapped)
            raise wrapped from exc

        LOGGER.info("upload_item_committed", extra={"item_id": key, "photo_id": photo.id, "owner_id": owner_id})
        emit(UploadState.SUCCESS)
        if self._publish is not None:
            try:
                self._publish(photo)
            except Exception as exc:
                LOGGER.error("upload_publish_error", extra={"photo_id": photo.id, "error": str(exc)})
        return photo

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


@dataclass
class UploadItem:
    """One file tracked by a :class:`BatchUpload`."""

    id: str
    raw: RawFile
    body_region: BodyRegion
    notes: str | None = None
    state: UploadState = UploadState.PENDING
    error: UploadError | None = None
    photo: Photo | None = None

    @property
    def retryable(self) -> bool:
        return self.state is UploadState.FAILED and self.error is not None and self.error.retryable


@dataclass
class BatchResult:
    succeeded: list[Photo] = field(default_factory=list)
    failed: list[UploadItem] = field(default_factory=list)


class BatchUpload:
    """Drive a set of uploads for one owner.

    Items run in submission order with at most ``concurrency`` in flight.
    Quota is reserved before each dispatch, counting in-flight items, so the
    ceiling holds under concurrency. The first refusal fails that item and
    every item still pending in the run without touching the network.
    """

    def __init__(
        self,
        pipeline: UploadPipeline,
        owner_id: str,
        *,
        concurrency: int | None = None,
        listener: UploadListener | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._owner_id = owner_id
        config = pipeline.config
        if concurrency is not None:
            config = replace(config, batch_concurrency=concurrency)
        self._concurrency = config.resolved_batch_concurrency()
        self._listener = listener
        self._items: dict[str, UploadItem] = {}
        self._lock = threading.Lock()
        self._cancel = CancelToken()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def items(self) -> list[UploadItem]:
        with self._lock:
            return list(self._items.values())

    def get(self, item_id: str) -> UploadItem:
        with self._lock:
            return self._items[item_id]

    def add(self, raw: RawFile, body_region: BodyRegion, notes: str | None = None) -> UploadItem:
        item = UploadItem(id=uuid.uuid4().hex, raw=raw, body_region=body_region, notes=notes)
        with self._lock:
            self._items[item.id] = item
        return item

    def extend(self, files: Iterable[RawFile], body_region: BodyRegion, notes: str | None = None) -> list[UploadItem]:
        return [self.add(raw, body_region, notes) for raw in files]

    @property
    def stats(self) -> dict[UploadState, int]:
        counts = {state: 0 for state in UploadState}
        for item in self.items:
            counts[item.state] += 1
        return counts

    def cancel(self) -> None:
        """Stop dispatching; in-flight items fail as cancelled, pending items stay pending."""

        LOGGER.info("batch_cancel_requested", extra={"owner_id": self._owner_id})
        self._cancel.cancel()

    def start(self) -> BatchResult:
        """Process every pending item."""

        return self._run([item for item in self.items if item.state is UploadState.PENDING])

    def retry(self, item_id: str) -> BatchResult:
        """Reset one failed item to pending and run only it."""

        item = self.get(item_id)
        if item.state is not UploadState.FAILED:
            raise ValueError(f"item {item_id} has not failed")
        if not item.retryable:
            raise ValueError(f"item {item_id} failed with a non-retryable error: {item.error}")
        self._reset(item)
        return self._run([item])

    def retry_failed(self) -> BatchResult:
        """Retry every failed item whose error is retryable."""

        targets = [item for item in self.items if item.retryable]
        for item in targets:
            self._reset(item)
        return self._run(targets)

    def _reset(self, item: UploadItem) -> None:
        with self._lock:
            item.state = UploadState.PENDING
            item.error = None
        self._notify(UploadEvent(item_id=item.id, state=UploadState.PENDING))

    def _notify(self, event: UploadEvent) -> None:
        if self._listener is not None:
            self._listener(event)

    def _track(self, event: UploadEvent) -> None:
        with self._lock:
            item = self._items.get(event.item_id)
            if item is not None:
                item.state = event.state
                if event.error is not None:
                    item.error = event.error
        self._notify(event)

    def _fail_quota(self, items: Sequence[UploadItem], error: QuotaExceeded) -> None:
        for item in items:
            self._track(UploadEvent(item_id=item.id, state=UploadState.FAILED, error=error))
        LOGGER.info(
            "batch_quota_exhausted",
            extra={"owner_id": self._owner_id, "failed_items": len(items), "limit": error.limit},
        )

    def _process(self, item: UploadItem, token: CancelToken) -> None:
        try:
            photo = self._pipeline.upload(
                self._owner_id,
                item.raw,
                item.body_region,
                item.notes,
                item_id=item.id,
                cancel=token,
                listener=self._track,
                check_quota=False,
            )
        except UploadError:
            return
        with self._lock:
            item.photo = photo

    def _reserve(self, in_flight: set[Future]) -> QuotaExceeded | None:
        """Wait until a quota slot is free for the next item, counting in-flight work."""

        while True:
            # Finished items are already counted by the store.
            in_flight.difference_update({future for future in in_flight if future.done()})
            try:
                self._pipeline.check_capacity(self._owner_id, in_flight=len(in_flight))
                return None
            except QuotaExceeded as exc:
                if not in_flight:
                    return exc
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                in_flight.difference_update(done)

    def _run(self, queue: list[UploadItem]) -> BatchResult:
        if self._cancel.cancelled:
            self._cancel = CancelToken()
        token = self._cancel
        LOGGER.info(
            "batch_start",
            extra={"owner_id": self._owner_id, "items": len(queue), "concurrency": self._concurrency},
        )

        submitted: list[Future] = []
        in_flight: set[Future] = set()
        with ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="photo-batch") as executor:
            for index, item in enumerate(queue):
                if token.cancelled:
                    break
                while len(in_flight) >= self._concurrency:
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    in_flight.difference_update(done)
                refused = self._reserve(in_flight)
                if refused is not None:
                    self._fail_quota(queue[index:], refused)
                    break
                if token.cancelled:
                    break
                future = executor.submit(self._process, item, token)
                submitted.append(future)
                in_flight.add(future)
        for future in submitted:
            future.result()

        result = BatchResult()
        for item in queue:
            if item.state is UploadState.SUCCESS and item.photo is not None:
                result.succeeded.append(item.photo)
            elif item.state is UploadState.FAILED:
                result.failed.append(item)
        LOGGER.info(
            "batch_complete",
            extra={
                "owner_id": self._owner_id,
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
                "cancelled": token.cancelled,
            },
        )
        return result


__all__ = [
    "UploadState",
    "UploadEvent",
    "UploadListener",
    "CancelToken",
    "UploadPipeline",
    "UploadItem",
    "BatchResult",
    "BatchUpload",
]
