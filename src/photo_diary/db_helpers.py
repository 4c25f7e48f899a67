"""Helpers for turning configured database targets into SQLAlchemy URLs."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine.url import URL, make_url

_IN_MEMORY = {":memory:", ""}


def _absolute(path: str | Path) -> Path:
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = Path.cwd() / candidate
    return candidate.resolve()


def _parse(target: str | Path) -> URL | Path:
    """Return a parsed URL, or a filesystem path for bare SQLite file targets."""

    if isinstance(target, Path):
        return _absolute(target)
    raw = str(target).strip()
    if not raw:
        raise ValueError("database target cannot be empty")
    if "://" not in raw:
        return _absolute(raw)
    return make_url(raw)


def normalize_database_url(target: str | Path) -> str:
    """Return a URL string in which SQLite file paths are absolute.

    Bare paths are treated as SQLite files. Non-SQLite URLs pass through as given.
    """

    parsed = _parse(target)
    if isinstance(parsed, Path):
        return f"sqlite:///{parsed}"
    if not parsed.drivername.startswith("sqlite"):
        return str(target).strip()
    database = parsed.database or ""
    if database not in _IN_MEMORY:
        parsed = parsed.set(database=str(_absolute(database)))
    return parsed.render_as_string(hide_password=False)


def sqlite_path_from_target(target: str | Path) -> Path | None:
    """Return the database file of a SQLite target, ``None`` for in-memory or other dialects."""

    parsed = _parse(target)
    if isinstance(parsed, Path):
        return parsed
    if not parsed.drivername.startswith("sqlite") or (parsed.database or "") in _IN_MEMORY:
        return None
    return _absolute(parsed.database)


def redact_database_url(target: str | Path) -> str:
    """Render a target for log output with any password masked."""

    parsed = _parse(target)
    if isinstance(parsed, Path):
        return f"sqlite:///{parsed}"
    return parsed.render_as_string(hide_password=True)


__all__ = ["normalize_database_url", "sqlite_path_from_target", "redact_database_url"]
