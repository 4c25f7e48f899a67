from __future__ import annotations

from photo_diary.config import Settings, UploadConfig, load_settings


def test_missing_file_returns_defaults(tmp_path) -> None:
    settings = load_settings(tmp_path / "absent.yaml")

    assert settings == Settings()
    assert settings.gallery.page_size == 40
    assert settings.quota.daily_limit == 2
    assert settings.derivatives.thumbnail_max_side == 400
    assert settings.storage.signed_url_ttl_seconds == 7 * 24 * 3600


def test_values_are_loaded_and_wrong_types_ignored(tmp_path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text(
        """
storage:
  backend: s3
  bucket: diary-photos
  public: "yes"
quota:
  daily_limit: 5
  timezone: Europe/Berlin
upload:
  put_timeout_seconds: 12
  batch_concurrency: two
gallery:
  page_size: -3
  sort: asc
backfill:
  use_celery: true
""",
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.storage.backend == "s3"
    assert settings.storage.bucket == "diary-photos"
    assert settings.storage.public is False
    assert settings.quota.daily_limit == 5
    assert settings.quota.timezone == "Europe/Berlin"
    assert settings.upload.put_timeout_seconds == 12.0
    assert settings.upload.batch_concurrency == 1
    assert settings.gallery.page_size == 40
    assert settings.gallery.sort == "asc"
    assert settings.backfill.use_celery is True


def test_malformed_yaml_falls_back_to_defaults(tmp_path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text("storage: [unclosed", encoding="utf-8")

    assert load_settings(path) == Settings()


def test_env_override_is_honoured(tmp_path, monkeypatch) -> None:
    path = tmp_path / "custom.yaml"
    path.write_text("gallery:\n  page_size: 12\n", encoding="utf-8")
    monkeypatch.setenv("PHOTO_DIARY_SETTINGS", str(path))

    assert load_settings().gallery.page_size == 12


def test_batch_concurrency_is_clamped() -> None:
    assert UploadConfig(batch_concurrency=5, max_batch_concurrency=2).resolved_batch_concurrency() == 2
    assert UploadConfig(batch_concurrency=0).resolved_batch_concurrency() == 1
