"""Photo removal: derivative blobs first, then the metadata row."""

from __future__ import annotations

from photo_diary.errors import ObjectStoreError
from photo_diary.metadata_store import MetadataStore
from photo_diary.object_store import ObjectStore
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "deletion"})


def delete_photo(metadata: MetadataStore, objects: ObjectStore, owner_id: str, photo_id: str) -> bool:
    """Delete ``photo_id`` for ``owner_id``; return ``False`` when no such row exists.

    Blob removal is best-effort: a leftover blob is an orphan, a leftover row
    would point at missing files. Row deletion errors propagate.
    """

    photo = metadata.get(owner_id, photo_id)
    if photo is None:
        return False

    paths = photo.derivatives.present()
    if paths:
        try:
            objects.remove(paths)
        except ObjectStoreError as exc:
            LOGGER.warning("photo_blob_remove_failed", extra={"photo_id": photo_id, "paths": paths, "error": str(exc)})

    deleted = metadata.delete(owner_id, photo_id)
    LOGGER.info("photo_deleted", extra={"photo_id": photo_id, "owner_id": owner_id, "blobs": len(paths)})
    return deleted


__all__ = ["delete_photo"]
