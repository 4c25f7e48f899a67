"""Scan for photos missing thumbnails and regenerate them in batches."""

from __future__ import annotations

from pathlib import Path

import typer

from photo_diary.backfill import build_regenerator
from photo_diary.config import Settings, load_settings
from photo_diary.errors import ReconcileError
from photo_diary.metadata_store import build_metadata_store
from photo_diary.object_store import build_object_store
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "dev_backfill"})


def main(
    owner: str | None = typer.Option(None, "--owner", help="Only repair photos of this owner."),
    limit: int = typer.Option(500, "--limit", help="Maximum number of rows to scan."),
    batch_size: int | None = typer.Option(None, "--batch-size", help="Photos per regenerate call."),
    settings_path: Path | None = typer.Option(None, "--settings", help="Path to settings.yaml."),
    dry_run: bool = typer.Option(False, "--dry-run", help="List affected photos without regenerating."),
) -> None:
    """Regenerate missing thumbnail and medium derivatives."""

    settings: Settings = load_settings(settings_path)
    metadata = build_metadata_store(settings)
    objects = build_object_store(settings)
    regenerator = build_regenerator(settings, metadata, objects)
    size = max(1, batch_size or settings.backfill.batch_size)

    photos = metadata.select_missing_thumbnails(owner, limit)
    LOGGER.info(
        "dev_backfill_start",
        extra={"owner": owner, "candidates": len(photos), "batch_size": size, "dry_run": dry_run},
    )
    if not photos:
        LOGGER.info("dev_backfill_nothing_to_do")
        return

    by_owner: dict[str, list[str]] = {}
    for photo in photos:
        by_owner.setdefault(photo.owner_id, []).append(photo.id)

    if dry_run:
        for owner_id, ids in by_owner.items():
            typer.echo(f"{owner_id}: {len(ids)} photo(s) missing thumbnails")
        return

    repaired = 0
    failed_batches = 0
    for owner_id, ids in by_owner.items():
        for start in range(0, len(ids), size):
            chunk = ids[start : start + size]
            try:
                results = regenerator.regenerate(owner_id, chunk)
            except ReconcileError as exc:
                failed_batches += 1
                LOGGER.error("dev_backfill_batch_failed", extra={"owner_id": owner_id, "error": str(exc)})
                continue
            repaired += len(results)
            LOGGER.info(
                "dev_backfill_progress",
                extra={"owner_id": owner_id, "requested": len(chunk), "repaired": len(results)},
            )

    LOGGER.info("dev_backfill_complete", extra={"repaired": repaired, "failed_batches": failed_batches})
    typer.echo(f"repaired {repaired} of {len(photos)} photo(s)")
    if failed_batches:
        raise typer.Exit(code=1)


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["main", "cli"]
