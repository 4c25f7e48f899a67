from __future__ import annotations

import time
from datetime import datetime

import pytest

from conftest import UTC, make_jpeg, wait_until
from photo_diary.capture import RawFile
from photo_diary.config import UploadConfig
from photo_diary.errors import (
    CaptureDecodeError,
    DerivativeUploadError,
    MetadataCommitError,
    MetadataStoreError,
    QuotaExceeded,
    UnexpectedUploadError,
    UploadCancelled,
)
from photo_diary.hasher import compute_content_hash
from photo_diary.photo import BodyRegion, PhotoFilter, SortDirection
from photo_diary.upload import CancelToken, UploadState


def _raw(name: str = "photo.jpg", **kwargs) -> RawFile:
    return RawFile(name, make_jpeg(**kwargs), "image/jpeg")


def test_successful_upload_stores_three_derivatives_and_row(build_pipeline, store, metadata) -> None:
    published = []
    events = []
    pipeline = build_pipeline(publish=published.append)

    photo = pipeline.upload(
        "owner",
        _raw(exif_datetime="2023:05:01 10:00:00"),
        BodyRegion.ARMS,
        notes="after lotion",
        item_id="item-1",
        listener=events.append,
    )

    assert [event.state for event in events] == [
        UploadState.NORMALIZING,
        UploadState.ENCODING,
        UploadState.UPLOADING,
        UploadState.COMMITTING,
        UploadState.SUCCESS,
    ]
    assert set(store.blobs) == set(photo.derivatives.present())
    assert len(store.blobs) == 3
    assert all(store.checksums[path] == compute_content_hash(data) for path, data in store.blobs.items())
    assert photo.captured_at == datetime(2023, 5, 1, 10, tzinfo=UTC).timestamp()
    assert photo.notes == "after lotion"
    assert published == [photo]
    assert metadata.get("owner", photo.id) == photo


def test_quota_refusal_makes_no_network_calls(build_pipeline, store) -> None:
    pipeline = build_pipeline(daily_limit=1)
    pipeline.upload("owner", _raw(), BodyRegion.FACE)
    puts_before = len(store.put_calls)

    with pytest.raises(QuotaExceeded):
        pipeline.upload("owner", _raw(), BodyRegion.FACE)

    assert len(store.put_calls) == puts_before


def test_decode_failure_happens_before_any_put(build_pipeline, store) -> None:
    pipeline = build_pipeline()
    events = []

    with pytest.raises(CaptureDecodeError):
        pipeline.upload("owner", RawFile("x.heic", b"garbage"), BodyRegion.FACE, listener=events.append)

    assert store.put_calls == []
    assert events[-1].state is UploadState.FAILED
    assert isinstance(events[-1].error, CaptureDecodeError)


def test_partial_derivative_failure_rolls_back_every_blob(build_pipeline, store, metadata) -> None:
    store.fail_put.add("medium")
    pipeline = build_pipeline()

    with pytest.raises(DerivativeUploadError) as excinfo:
        pipeline.upload("owner", _raw(), BodyRegion.LEGS)

    assert excinfo.value.variant == "medium"
    assert excinfo.value.retryable is True
    assert store.blobs == {}
    assert metadata.select_page("owner", PhotoFilter(), None, 10, SortDirection.DESC) == []


def test_original_failure_is_best_effort(build_pipeline, store) -> None:
    store.fail_put.add("original")
    photo = build_pipeline().upload("owner", _raw(), BodyRegion.BACK)

    assert photo.derivatives.original is None
    assert photo.derivatives.thumbnail in store.blobs
    assert photo.derivatives.medium in store.blobs


def test_timed_out_put_is_failed_and_late_landing_is_removed(build_pipeline, store) -> None:
    store.put_delay["thumbnail"] = 0.5
    pipeline = build_pipeline(config=UploadConfig(put_timeout_seconds=0.1, commit_timeout_seconds=5.0))

    with pytest.raises(DerivativeUploadError) as excinfo:
        pipeline.upload("owner", _raw(), BodyRegion.HANDS)

    assert excinfo.value.variant == "thumbnail"
    late_removed = lambda: any(len(call) == 1 and "thumbnail" in call[0] for call in store.remove_calls)
    assert wait_until(lambda: late_removed() and not store.blobs)


def test_commit_failure_removes_uploaded_blobs(build_pipeline, store, metadata, monkeypatch) -> None:
    def _fail(row):
        raise MetadataStoreError("insert failed")

    monkeypatch.setattr(metadata, "insert", _fail)
    pipeline = build_pipeline()

    with pytest.raises(MetadataCommitError):
        pipeline.upload("owner", _raw(), BodyRegion.FEET)

    assert len(store.put_calls) == 3
    assert store.blobs == {}


def test_rollback_failure_is_logged_not_raised(build_pipeline, store) -> None:
    store.fail_put.add("thumbnail")
    store.fail_remove = True
    pipeline = build_pipeline()

    with pytest.raises(DerivativeUploadError):
        pipeline.upload("owner", _raw(), BodyRegion.NECK)

    assert store.remove_calls


def test_cancelled_before_start_raises_without_side_effects(build_pipeline, store) -> None:
    token = CancelToken()
    token.cancel()

    with pytest.raises(UploadCancelled) as excinfo:
        build_pipeline().upload("owner", _raw(), BodyRegion.TORSO, cancel=token)

    assert excinfo.value.retryable is True
    assert store.put_calls == []


def test_cancel_during_upload_rolls_back(build_pipeline, store, metadata) -> None:
    token = CancelToken()

    def _listener(event):
        if event.state is UploadState.UPLOADING:
            token.cancel()

    with pytest.raises(UploadCancelled):
        build_pipeline().upload("owner", _raw(), BodyRegion.TORSO, cancel=token, listener=_listener)

    assert store.blobs == {}
    assert metadata.select_page("owner", PhotoFilter(), None, 10, SortDirection.DESC) == []


def test_unexpected_error_fails_item_and_removes_blobs(build_pipeline, store, metadata, monkeypatch) -> None:
    def _explode(row):
        raise RuntimeError("driver crashed")

    monkeypatch.setattr(metadata, "insert", _explode)
    events = []

    with pytest.raises(UnexpectedUploadError) as excinfo:
        build_pipeline().upload("owner", _raw(), BodyRegion.ARMS, listener=events.append)

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert excinfo.value.retryable is True
    assert events[-1].state is UploadState.FAILED
    assert events[-1].error is excinfo.value
    assert store.blobs == {}


def test_commit_timeout_rolls_back_and_reverts_late_row(build_pipeline, store, metadata, monkeypatch) -> None:
    landed: list[str] = []
    insert = metadata.insert

    def _slow_insert(row):
        time.sleep(0.3)
        photo = insert(row)
        landed.append(row.id)
        return photo

    monkeypatch.setattr(metadata, "insert", _slow_insert)
    pipeline = build_pipeline(config=UploadConfig(put_timeout_seconds=5.0, commit_timeout_seconds=0.05))

    with pytest.raises(MetadataCommitError):
        pipeline.upload("owner", _raw(), BodyRegion.BACK)

    assert store.blobs == {}
    assert wait_until(lambda: bool(landed) and metadata.get("owner", landed[0]) is None)


def test_quota_check_timeout_fails_open(build_pipeline, metadata, monkeypatch) -> None:
    count = metadata.count_uploaded_between

    def _slow_count(owner_id, start, end):
        time.sleep(0.3)
        return count(owner_id, start, end)

    monkeypatch.setattr(metadata, "count_uploaded_between", _slow_count)
    pipeline = build_pipeline(daily_limit=0, config=UploadConfig(quota_timeout_seconds=0.05, commit_timeout_seconds=5.0))

    photo = pipeline.upload("owner", _raw(), BodyRegion.FACE)

    assert metadata.get("owner", photo.id) is not None
