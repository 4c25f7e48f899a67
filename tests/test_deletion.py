from __future__ import annotations

from photo_diary.deletion import delete_photo
from photo_diary.metadata_store import NewPhotoRow
from photo_diary.photo import BodyRegion, DerivativePaths


def _seed(metadata, store) -> DerivativePaths:
    paths = DerivativePaths(
        thumbnail="owner/p/thumbnail.webp",
        medium="owner/p/medium.webp",
        original="owner/p/original.jpg",
    )
    for path in paths.present():
        store.put(path, b"data", "image/webp")
    metadata.insert(NewPhotoRow(id="p", owner_id="owner", body_region=BodyRegion.FACE, derivatives=paths))
    return paths


def test_delete_removes_blobs_then_row(metadata, store) -> None:
    _seed(metadata, store)

    assert delete_photo(metadata, store, "owner", "p") is True

    assert store.blobs == {}
    assert metadata.get("owner", "p") is None


def test_delete_unknown_or_foreign_photo_is_noop(metadata, store) -> None:
    _seed(metadata, store)

    assert delete_photo(metadata, store, "intruder", "p") is False
    assert delete_photo(metadata, store, "owner", "missing") is False
    assert len(store.blobs) == 3


def test_blob_removal_failure_still_deletes_row(metadata, store) -> None:
    _seed(metadata, store)
    store.fail_remove = True

    assert delete_photo(metadata, store, "owner", "p") is True
    assert metadata.get("owner", "p") is None
