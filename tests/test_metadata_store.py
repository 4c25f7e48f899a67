from __future__ import annotations

import pytest
from sqlalchemy import inspect

from photo_diary.db import dispose_engines, get_engine
from photo_diary.errors import MetadataStoreError
from photo_diary.metadata_store import NewPhotoRow, PageCursor, SqlMetadataStore
from photo_diary.photo import BodyRegion, DerivativePaths, PhotoFilter, SortDirection


def _row(photo_id: str, *, region: BodyRegion = BodyRegion.FACE, captured_at=None, thumbnail=True) -> NewPhotoRow:
    return NewPhotoRow(
        id=photo_id,
        owner_id="owner",
        body_region=region,
        derivatives=DerivativePaths(
            thumbnail=f"owner/{photo_id}/thumbnail.webp" if thumbnail else None,
            medium=f"owner/{photo_id}/medium.webp",
            original=f"owner/{photo_id}/original.jpg",
        ),
        captured_at=captured_at,
    )


def test_insert_assigns_upload_time_from_store_clock(metadata, clock) -> None:
    photo = metadata.insert(_row("a", captured_at=123.0))

    assert photo.uploaded_at == clock.now
    assert photo.captured_at == 123.0
    assert photo.display_timestamp == 123.0
    assert metadata.get("owner", "a") == photo
    assert metadata.get("intruder", "a") is None


def test_select_page_orders_and_filters(metadata, clock) -> None:
    metadata.insert(_row("old", captured_at=clock.now - 1000))
    clock.advance(1)
    metadata.insert(_row("arm", region=BodyRegion.ARMS))
    clock.advance(1)
    metadata.insert(_row("new"))

    newest_first = metadata.select_page("owner", PhotoFilter(), None, 10, SortDirection.DESC)
    oldest_first = metadata.select_page("owner", PhotoFilter(), None, 10, SortDirection.ASC)
    arms = metadata.select_page("owner", PhotoFilter(body_region=BodyRegion.ARMS), None, 10, SortDirection.DESC)

    assert [photo.id for photo in newest_first] == ["new", "arm", "old"]
    assert [photo.id for photo in oldest_first] == ["old", "arm", "new"]
    assert [photo.id for photo in arms] == ["arm"]


def test_cursor_breaks_ties_on_upload_time_then_id(metadata, clock) -> None:
    for photo_id in ("b", "a", "c"):
        metadata.insert(_row(photo_id, captured_at=500.0))

    first = metadata.select_page("owner", PhotoFilter(), None, 2, SortDirection.DESC)
    rest = metadata.select_page("owner", PhotoFilter(), PageCursor.after(first[-1]), 2, SortDirection.DESC)

    assert [photo.id for photo in first] == ["c", "b"]
    assert [photo.id for photo in rest] == ["a"]


def test_cursor_token_round_trips_and_rejects_garbage() -> None:
    cursor = PageCursor(display_timestamp=1.5, uploaded_at=2.5, photo_id="abc")

    assert PageCursor.decode(cursor.encode()) == cursor
    with pytest.raises(ValueError):
        PageCursor.decode("not-a-cursor")


def test_update_derivatives_only_fills_empty_slots(metadata) -> None:
    metadata.insert(_row("a", thumbnail=False))

    updated = metadata.update_derivatives(
        "owner",
        "a",
        DerivativePaths(thumbnail="owner/a/thumbnail.webp", medium="owner/a/other.webp"),
    )

    assert updated.derivatives.thumbnail == "owner/a/thumbnail.webp"
    assert updated.derivatives.medium == "owner/a/medium.webp"
    assert metadata.update_derivatives("owner", "missing", DerivativePaths(thumbnail="x")) is None


def test_missing_thumbnail_scan_and_counts(metadata, clock) -> None:
    metadata.insert(_row("full"))
    metadata.insert(_row("bare", thumbnail=False))

    assert [photo.id for photo in metadata.select_missing_thumbnails()] == ["bare"]
    assert metadata.select_count_since("owner", clock.now) == 2
    assert metadata.select_count_since("owner", clock.now + 1) == 0
    assert metadata.count_uploaded_between("owner", clock.now, clock.now + 1) == 2


def test_get_many_preserves_request_order_and_ownership(metadata) -> None:
    metadata.insert(_row("a"))
    metadata.insert(_row("b"))

    assert [photo.id for photo in metadata.get_many("owner", ["b", "zzz", "a"])] == ["b", "a"]
    assert metadata.get_many("someone", ["a"]) == []


def test_notes_and_delete(metadata) -> None:
    metadata.insert(_row("a"))

    assert metadata.update_notes("owner", "a", "itchy").notes == "itchy"
    assert metadata.delete("owner", "a") is True
    assert metadata.delete("owner", "a") is False


def test_database_errors_surface_as_store_errors(tmp_path) -> None:
    store = SqlMetadataStore(tmp_path / "broken.db")
    store.insert(_row("a"))
    dispose_engines()
    (tmp_path / "broken.db").unlink()
    (tmp_path / "broken.db").mkdir()

    with pytest.raises(MetadataStoreError):
        store.get("owner", "a")
    dispose_engines()


def test_photos_table_indexes_quota_and_region_lookups(tmp_path) -> None:
    target = tmp_path / "photos.db"
    SqlMetadataStore(target).insert(_row("p1"))

    indexes = {index["name"]: index["column_names"] for index in inspect(get_engine(target)).get_indexes("photos")}

    assert indexes["idx_photos_owner_uploaded"] == ["owner_id", "uploaded_at"]
    assert indexes["idx_photos_owner_region"] == ["owner_id", "body_region"]
