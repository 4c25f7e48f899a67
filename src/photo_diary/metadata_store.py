"""Relational read/write contract for photo rows."""

from __future__ import annotations

import base64
import json
import time
import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from photo_diary.config import Settings
from photo_diary.db import PhotoRecord, open_session
from photo_diary.errors import MetadataStoreError
from photo_diary.photo import BodyRegion, DerivativePaths, Photo, PhotoFilter, SortDirection
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "metadata_store"})


@dataclass(frozen=True)
class PageCursor:
    """Composite position of the last row returned by a page query."""

    display_timestamp: float
    uploaded_at: float
    photo_id: str

    @classmethod
    def after(cls, photo: Photo) -> "PageCursor":
        display, uploaded, photo_id = photo.sort_key
        return cls(display_timestamp=display, uploaded_at=uploaded, photo_id=photo_id)

    def encode(self) -> str:
        """Return an opaque, URL-safe token for handing to clients."""

        payload = json.dumps([self.display_timestamp, self.uploaded_at, self.photo_id], separators=(",", ":"))
        return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, token: str) -> "PageCursor":
        try:
            display, uploaded, photo_id = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
            return cls(display_timestamp=float(display), uploaded_at=float(uploaded), photo_id=str(photo_id))
        except (ValueError, TypeError) as exc:
            raise ValueError(f"invalid page cursor: {token!r}") from exc

    def as_tuple(self) -> tuple[float, float, str]:
        return (self.display_timestamp, self.uploaded_at, self.photo_id)


@dataclass(frozen=True)
class NewPhotoRow:
    """Values supplied by the upload pipeline; ``uploaded_at`` is assigned by the store."""

    id: str
    owner_id: str
    body_region: BodyRegion
    derivatives: DerivativePaths
    captured_at: float | None = None
    notes: str | None = None


class MetadataStore(Protocol):
    """Contract the pipeline relies on; implementations raise :class:`MetadataStoreError`."""

    def allocate_id(self) -> str: ...

    def insert(self, row: NewPhotoRow) -> Photo: ...

    def get(self, owner_id: str, photo_id: str) -> Photo | None: ...

    def get_many(self, owner_id: str, photo_ids: Sequence[str]) -> list[Photo]: ...

    def select_page(
        self,
        owner_id: str,
        photo_filter: PhotoFilter,
        cursor: PageCursor | None,
        limit: int,
        sort: SortDirection,
    ) -> list[Photo]: ...

    def select_count_since(self, owner_id: str, since: float) -> int: ...

    def count_uploaded_between(self, owner_id: str, start: float, end: float) -> int: ...

    def update_derivatives(self, owner_id: str, photo_id: str, paths: DerivativePaths) -> Photo | None: ...

    def update_notes(self, owner_id: str, photo_id: str, notes: str | None) -> Photo | None: ...

    def delete(self, owner_id: str, photo_id: str) -> bool: ...

    def select_missing_thumbnails(self, owner_id: str | None = None, limit: int = 100) -> list[Photo]: ...


def _to_photo(record: PhotoRecord) -> Photo:
    return Photo(
        id=record.id,
        owner_id=record.owner_id,
        body_region=BodyRegion(record.body_region),
        derivatives=DerivativePaths(
            thumbnail=record.thumbnail_path,
            medium=record.medium_path,
            original=record.original_path,
        ),
        uploaded_at=record.uploaded_at,
        captured_at=record.captured_at,
        notes=record.notes,
    )


def _display_column():
    return func.coalesce(PhotoRecord.captured_at, PhotoRecord.uploaded_at)


def _cursor_predicate(cursor: PageCursor, sort: SortDirection):
    """Strict lexicographic comparison of ``(display, uploaded_at, id)`` against the cursor."""

    display = _display_column()
    if sort is SortDirection.DESC:
        return or_(
            display < cursor.display_timestamp,
            and_(
                display == cursor.display_timestamp,
                or_(
                    PhotoRecord.uploaded_at < cursor.uploaded_at,
                    and_(PhotoRecord.uploaded_at == cursor.uploaded_at, PhotoRecord.id < cursor.photo_id),
                ),
            ),
        )
    return or_(
        display > cursor.display_timestamp,
        and_(
            display == cursor.display_timestamp,
            or_(
                PhotoRecord.uploaded_at > cursor.uploaded_at,
                and_(PhotoRecord.uploaded_at == cursor.uploaded_at, PhotoRecord.id > cursor.photo_id),
            ),
        ),
    )


class SqlMetadataStore:
    """SQLAlchemy-backed :class:`MetadataStore`."""

    def __init__(self, target: str | Path, *, clock: Callable[[], float] = time.time) -> None:
        self._target = target
        self._clock = clock

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        try:
            with open_session(self._target) as session:
                yield session
        except SQLAlchemyError as exc:
            LOGGER.error("metadata_query_error", extra={"operation": operation, "error": str(exc)})
            raise MetadataStoreError(f"{operation} failed: {exc}") from exc

    def allocate_id(self) -> str:
        return uuid.uuid4().hex

    def insert(self, row: NewPhotoRow) -> Photo:
        record = PhotoRecord(
            id=row.id,
            owner_id=row.owner_id,
            body_region=row.body_region.value,
            thumbnail_path=row.derivatives.thumbnail,
            medium_path=row.derivatives.medium,
            original_path=row.derivatives.original,
            captured_at=row.captured_at,
            uploaded_at=self._clock(),
            notes=row.notes,
        )
        with self._session("insert") as session:
            session.add(record)
            session.commit()
            return _to_photo(record)

    def get(self, owner_id: str, photo_id: str) -> Photo | None:
        with self._session("get") as session:
            record = session.execute(
                select(PhotoRecord).where(PhotoRecord.id == photo_id, PhotoRecord.owner_id == owner_id)
            ).scalar_one_or_none()
            return _to_photo(record) if record is not None else None

    def get_many(self, owner_id: str, photo_ids: Sequence[str]) -> list[Photo]:
        if not photo_ids:
            return []
        with self._session("get_many") as session:
            records = session.execute(
                select(PhotoRecord).where(PhotoRecord.owner_id == owner_id, PhotoRecord.id.in_(list(photo_ids)))
            ).scalars()
            by_id = {record.id: _to_photo(record) for record in records}
        return [by_id[photo_id] for photo_id in photo_ids if photo_id in by_id]

    def select_page(
        self,
        owner_id: str,
        photo_filter: PhotoFilter,
        cursor: PageCursor | None,
        limit: int,
        sort: SortDirection,
    ) -> list[Photo]:
        display = _display_column()
        stmt = select(PhotoRecord).where(PhotoRecord.owner_id == owner_id)
        if photo_filter.body_region is not None:
            stmt = stmt.where(PhotoRecord.body_region == photo_filter.body_region.value)
        if cursor is not None:
            stmt = stmt.where(_cursor_predicate(cursor, sort))
        if sort is SortDirection.DESC:
            stmt = stmt.order_by(display.desc(), PhotoRecord.uploaded_at.desc(), PhotoRecord.id.desc())
        else:
            stmt = stmt.order_by(display.asc(), PhotoRecord.uploaded_at.asc(), PhotoRecord.id.asc())
        stmt = stmt.limit(max(0, int(limit)))

        with self._session("select_page") as session:
            return [_to_photo(record) for record in session.execute(stmt).scalars()]

    def select_count_since(self, owner_id: str, since: float) -> int:
        stmt = select(func.count()).select_from(PhotoRecord).where(
            PhotoRecord.owner_id == owner_id, PhotoRecord.uploaded_at >= since
        )
        with self._session("select_count_since") as session:
            return int(session.execute(stmt).scalar_one())

    def count_uploaded_between(self, owner_id: str, start: float, end: float) -> int:
        stmt = select(func.count()).select_from(PhotoRecord).where(
            PhotoRecord.owner_id == owner_id,
            PhotoRecord.uploaded_at >= start,
            PhotoRecord.uploaded_at < end,
        )
        with self._session("count_uploaded_between") as session:
            return int(session.execute(stmt).scalar_one())

    def update_derivatives(self, owner_id: str, photo_id: str, paths: DerivativePaths) -> Photo | None:
        with self._session("update_derivatives") as session:
            record = session.execute(
                select(PhotoRecord).where(PhotoRecord.id == photo_id, PhotoRecord.owner_id == owner_id)
            ).scalar_one_or_none()
            if record is None:
                return None
            if record.thumbnail_path is None and paths.thumbnail:
                record.thumbnail_path = paths.thumbnail
            if record.medium_path is None and paths.medium:
                record.medium_path = paths.medium
            if record.original_path is None and paths.original:
                record.original_path = paths.original
            session.commit()
            return _to_photo(record)

    def update_notes(self, owner_id: str, photo_id: str, notes: str | None) -> Photo | None:
        with self._session("update_notes") as session:
            session.execute(
                update(PhotoRecord)
                .where(PhotoRecord.id == photo_id, PhotoRecord.owner_id == owner_id)
                .values(notes=notes)
            )
            session.commit()
        return self.get(owner_id, photo_id)

    def delete(self, owner_id: str, photo_id: str) -> bool:
        with self._session("delete") as session:
            result = session.execute(
                delete(PhotoRecord).where(PhotoRecord.id == photo_id, PhotoRecord.owner_id == owner_id)
            )
            session.commit()
            return bool(result.rowcount)

    def select_missing_thumbnails(self, owner_id: str | None = None, limit: int = 100) -> list[Photo]:
        stmt = select(PhotoRecord).where(PhotoRecord.thumbnail_path.is_(None))
        if owner_id is not None:
            stmt = stmt.where(PhotoRecord.owner_id == owner_id)
        stmt = stmt.order_by(PhotoRecord.owner_id, PhotoRecord.uploaded_at).limit(max(0, int(limit)))
        with self._session("select_missing_thumbnails") as session:
            return [_to_photo(record) for record in session.execute(stmt).scalars()]


def build_metadata_store(settings: Settings) -> SqlMetadataStore:
    return SqlMetadataStore(settings.databases.primary_url)


__all__ = ["PageCursor", "NewPhotoRow", "MetadataStore", "SqlMetadataStore", "build_metadata_store"]
