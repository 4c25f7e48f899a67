"""Exception hierarchy for the photo ingestion and gallery pipeline."""

from __future__ import annotations


class PhotoDiaryError(Exception):
    """Base class for every error raised by :mod:`photo_diary`."""


class StoreError(PhotoDiaryError):
    """A collaborating storage service (object or metadata store) failed."""


class ObjectStoreError(StoreError):
    """Blob put/remove/sign/get failed."""


class MetadataStoreError(StoreError):
    """Relational metadata query or write failed."""


class UploadError(PhotoDiaryError):
    """Per-item upload failure surfaced to the batch controller.

    ``retryable`` tells the caller whether resubmitting the same item can
    succeed without user intervention.
    """

    retryable: bool = True
    reason: str = "upload_failed"

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class CaptureDecodeError(UploadError):
    """The source file could not be decoded into a bitmap."""

    retryable = False
    reason = "capture_decode"


class QuotaExceeded(UploadError):
    """The owner has reached the daily upload ceiling."""

    retryable = False
    reason = "quota_exceeded"

    def __init__(self, count: int, limit: int) -> None:
        super().__init__(f"daily upload limit reached ({count}/{limit})")
        self.count = count
        self.limit = limit


class DerivativeUploadError(UploadError):
    """A required derivative blob could not be written."""

    reason = "derivative_upload"

    def __init__(self, variant: str, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(f"{variant} upload failed: {message}", cause=cause)
        self.variant = variant


class MetadataCommitError(UploadError):
    """The metadata row insert failed after blobs were written."""

    reason = "metadata_commit"


class UploadCancelled(UploadError):
    """The batch was cancelled while this item was in flight."""

    reason = "cancelled"


class UnexpectedUploadError(UploadError):
    """An item failed with an error outside the pipeline's own failure modes."""

    reason = "unexpected"


class SigningError(PhotoDiaryError):
    """A display URL could not be produced for a stored derivative."""


class ReconcileError(PhotoDiaryError):
    """A backfill regeneration batch failed remotely."""


__all__ = [
    "PhotoDiaryError",
    "StoreError",
    "ObjectStoreError",
    "MetadataStoreError",
    "UploadError",
    "CaptureDecodeError",
    "QuotaExceeded",
    "DerivativeUploadError",
    "MetadataCommitError",
    "UploadCancelled",
    "UnexpectedUploadError",
    "SigningError",
    "ReconcileError",
]
