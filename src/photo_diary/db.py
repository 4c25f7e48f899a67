"""SQLAlchemy schema definitions and session management for photo metadata."""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any

from sqlalchemy import Float, Index, String, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from photo_diary.db_helpers import normalize_database_url, redact_database_url
from utils.logging import get_logger

LOGGER = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class PhotoRecord(Base):
    """One uploaded photo and the object paths of its derivatives."""

    __tablename__ = "photos"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    body_region: Mapped[str] = mapped_column(String, nullable=False)
    thumbnail_path: Mapped[str | None] = mapped_column(String, nullable=True)
    medium_path: Mapped[str | None] = mapped_column(String, nullable=True)
    original_path: Mapped[str | None] = mapped_column(String, nullable=True)
    captured_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    uploaded_at: Mapped[float] = mapped_column(Float, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_photos_owner_uploaded", "owner_id", "uploaded_at"),
        Index("idx_photos_owner_region", "owner_id", "body_region"),
    )


_ENGINE_CACHE: dict[str, Engine] = {}
_ENGINE_LOCK = Lock()


def _ensure_parent_directory(path: Path) -> None:
    """Ensure the parent directory for a database file exists."""

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.error("db_parent_directory_error", extra={"path": str(path), "error": str(exc)})
        raise


def get_engine(target: str | Path) -> Engine:
    """Return a cached SQLAlchemy engine for the provided target, creating schema if needed."""

    normalized = normalize_database_url(target)
    engine = _ENGINE_CACHE.get(normalized)
    if engine is not None:
        return engine

    with _ENGINE_LOCK:
        engine = _ENGINE_CACHE.get(normalized)
        if engine is not None:
            return engine

        sa_url = make_url(normalized)
        is_sqlite = sa_url.drivername.startswith("sqlite")

        engine_kwargs: dict[str, object] = {}
        if is_sqlite:
            if sa_url.database and sa_url.database not in {":memory:"}:
                _ensure_parent_directory(Path(sa_url.database))
            # Network calls run on worker threads; connections move between them.
            engine_kwargs["connect_args"] = {"timeout": 30.0, "check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True

        engine = create_engine(normalized, **engine_kwargs)

        if is_sqlite:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:  # type: ignore[override]
                """Configure SQLite for better concurrent access."""

                cursor = dbapi_connection.cursor()
                try:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA busy_timeout = 30000")
                finally:
                    cursor.close()

        try:
            Base.metadata.create_all(engine)
        except OperationalError as exc:
            # Two processes may race between SQLite's existence check and the
            # CREATE TABLE statement; "already exists" is benign.
            message = str(exc).lower()
            if "already exists" in message:
                LOGGER.info(
                    "db_create_all_table_exists_race",
                    extra={"target": redact_database_url(normalized), "error": str(exc)},
                )
            else:
                raise

        _ENGINE_CACHE[normalized] = engine
        return engine


def open_session(target: str | Path) -> Session:
    """Open a SQLAlchemy session for the metadata database."""

    engine = get_engine(target)
    return Session(engine, expire_on_commit=False)


def dispose_engines() -> None:
    """Dispose and forget every cached engine (used by tests and shutdown hooks)."""

    with _ENGINE_LOCK:
        for engine in _ENGINE_CACHE.values():
            engine.dispose()
        _ENGINE_CACHE.clear()


__all__ = ["Base", "PhotoRecord", "get_engine", "open_session", "dispose_engines"]
