"""Configuration loader and typed settings for the photo diary media pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class DatabaseConfig:
    """Connection target for the relational metadata store."""

    primary_url: str = "sqlite:///data/photo_diary.db"


@dataclass
class StorageConfig:
    """Object store backend and URL signing policy."""

    backend: str = "local"
    root: str = "data/bucket"
    bucket: str = "user-photos"
    public: bool = False
    public_base_url: str | None = None
    signing_secret: str = "change-me"
    region: str | None = None
    endpoint_url: str | None = None
    signed_url_ttl_seconds: int = 7 * 24 * 3600
    signed_url_margin_seconds: int = 3600
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 30.0


@dataclass
class DerivativeConfig:
    """Sizes, qualities, and encodings for the three stored derivatives."""

    format: str = "webp"
    thumbnail_max_side: int = 400
    thumbnail_quality: int = 75
    medium_max_side: int = 1200
    medium_quality: int = 85
    original_quality: int = 95
    cache_control: str = "31536000"


@dataclass
class QuotaConfig:
    """Daily upload ceiling for non-premium accounts."""

    daily_limit: int = 2
    timezone: str | None = None


@dataclass
class UploadConfig:
    """Per-call timeouts and batch scheduling for the upload pipeline."""

    quota_timeout_seconds: float = 5.0
    put_timeout_seconds: float = 60.0
    commit_timeout_seconds: float = 15.0
    remove_timeout_seconds: float = 30.0
    batch_concurrency: int = 1
    max_batch_concurrency: int = 2
    network_workers: int = 6

    def resolved_batch_concurrency(self) -> int:
        """Return the batch concurrency clamped to ``[1, max_batch_concurrency]``."""

        ceiling = max(1, int(self.max_batch_concurrency))
        return max(1, min(int(self.batch_concurrency), ceiling))


@dataclass
class GalleryConfig:
    """Feed paging defaults."""

    page_size: int = 40
    sort: str = "desc"


@dataclass
class BackfillConfig:
    """Missing-thumbnail reconciliation knobs."""

    batch_size: int = 20
    regenerate_timeout_seconds: float = 120.0
    use_celery: bool = False


@dataclass
class QueueConfig:
    """Celery broker and queue configuration."""

    broker_url: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"
    backfill_queue: str = "derivatives"
    default_concurrency: int = 2


@dataclass
class Settings:
    """Top-level application settings."""

    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    derivatives: DerivativeConfig = field(default_factory=DerivativeConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    gallery: GalleryConfig = field(default_factory=GalleryConfig)
    backfill: BackfillConfig = field(default_factory=BackfillConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover
        return module_path.parent


def _build_default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    repo_candidate = (_project_root() / "config" / "settings.yaml").resolve()

    candidates: list[Path] = []
    seen: set[Path] = set()
    for candidate in (cwd_candidate, repo_candidate):
        if candidate in seen:
            continue
        seen.add(candidate)
        candidates.append(candidate)
    return candidates


_DEFAULT_SETTINGS_PATHS = _build_default_settings_paths()


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("PHOTO_DIARY_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    for candidate in _DEFAULT_SETTINGS_PATHS:
        if candidate.exists():
            return candidate
    return _DEFAULT_SETTINGS_PATHS[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    If the file is missing or malformed, the loader returns a :class:`Settings`
    instance populated with default values. Keys with an unexpected type are
    ignored.
    """
    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    raw: Any
    with path.open("r", encoding="utf-8") as fp:
        try:
            raw = yaml.safe_load(fp) or {}
        except yaml.YAMLError:
            return settings

    if not isinstance(raw, dict):
        return settings

    databases_raw = _as_dict(raw.get("databases"))
    if isinstance(databases_raw.get("primary_url"), str):
        settings.databases.primary_url = databases_raw["primary_url"]

    storage_raw = _as_dict(raw.get("storage"))
    storage_cfg = settings.storage
    for key in ("backend", "root", "bucket", "signing_secret"):
        if isinstance(storage_raw.get(key), str):
            setattr(storage_cfg, key, storage_raw[key])
    for key in ("public_base_url", "region", "endpoint_url"):
        if isinstance(storage_raw.get(key), str):
            setattr(storage_cfg, key, storage_raw[key])
    if isinstance(storage_raw.get("public"), bool):
        storage_cfg.public = storage_raw["public"]
    if _is_int(storage_raw.get("signed_url_ttl_seconds")):
        storage_cfg.signed_url_ttl_seconds = storage_raw["signed_url_ttl_seconds"]
    if _is_int(storage_raw.get("signed_url_margin_seconds")):
        storage_cfg.signed_url_margin_seconds = storage_raw["signed_url_margin_seconds"]
    if _is_number(storage_raw.get("connect_timeout_seconds")):
        storage_cfg.connect_timeout_seconds = float(storage_raw["connect_timeout_seconds"])
    if _is_number(storage_raw.get("read_timeout_seconds")):
        storage_cfg.read_timeout_seconds = float(storage_raw["read_timeout_seconds"])

    derivatives_raw = _as_dict(raw.get("derivatives"))
    derivatives_cfg = settings.derivatives
    if derivatives_raw.get("format") in {"webp", "jpeg"}:
        derivatives_cfg.format = derivatives_raw["format"]
    if isinstance(derivatives_raw.get("cache_control"), str):
        derivatives_cfg.cache_control = derivatives_raw["cache_control"]
    for key in (
        "thumbnail_max_side",
        "thumbnail_quality",
        "medium_max_side",
        "medium_quality",
        "original_quality",
    ):
        if _is_int(derivatives_raw.get(key)):
            setattr(derivatives_cfg, key, derivatives_raw[key])

    quota_raw = _as_dict(raw.get("quota"))
    if _is_int(quota_raw.get("daily_limit")):
        settings.quota.daily_limit = quota_raw["daily_limit"]
    if isinstance(quota_raw.get("timezone"), str):
        settings.quota.timezone = quota_raw["timezone"]

    upload_raw = _as_dict(raw.get("upload"))
    upload_cfg = settings.upload
    for key in (
        "quota_timeout_seconds",
        "put_timeout_seconds",
        "commit_timeout_seconds",
        "remove_timeout_seconds",
    ):
        if _is_number(upload_raw.get(key)):
            setattr(upload_cfg, key, float(upload_raw[key]))
    for key in ("batch_concurrency", "max_batch_concurrency", "network_workers"):
        if _is_int(upload_raw.get(key)):
            setattr(upload_cfg, key, upload_raw[key])

    gallery_raw = _as_dict(raw.get("gallery"))
    if _is_int(gallery_raw.get("page_size")) and gallery_raw["page_size"] > 0:
        settings.gallery.page_size = gallery_raw["page_size"]
    if gallery_raw.get("sort") in {"asc", "desc"}:
        settings.gallery.sort = gallery_raw["sort"]

    backfill_raw = _as_dict(raw.get("backfill"))
    if _is_int(backfill_raw.get("batch_size")) and backfill_raw["batch_size"] > 0:
        settings.backfill.batch_size = backfill_raw["batch_size"]
    if _is_number(backfill_raw.get("regenerate_timeout_seconds")):
        settings.backfill.regenerate_timeout_seconds = float(backfill_raw["regenerate_timeout_seconds"])
    if isinstance(backfill_raw.get("use_celery"), bool):
        settings.backfill.use_celery = backfill_raw["use_celery"]

    queue_raw = _as_dict(raw.get("queues"))
    queue_cfg = settings.queues
    if isinstance(queue_raw.get("broker_url"), str):
        queue_cfg.broker_url = queue_raw["broker_url"]
    if isinstance(queue_raw.get("result_backend"), str):
        queue_cfg.result_backend = queue_raw["result_backend"]
    if isinstance(queue_raw.get("backfill_queue"), str):
        queue_cfg.backfill_queue = queue_raw["backfill_queue"]
    if _is_int(queue_raw.get("default_concurrency")):
        queue_cfg.default_concurrency = queue_raw["default_concurrency"]

    return settings


__all__ = [
    "DatabaseConfig",
    "StorageConfig",
    "DerivativeConfig",
    "QuotaConfig",
    "UploadConfig",
    "GalleryConfig",
    "BackfillConfig",
    "QueueConfig",
    "Settings",
    "load_settings",
]
