"""Celery task wiring for background derivative regeneration."""

from __future__ import annotations

from functools import lru_cache

from celery import Celery

from photo_diary.backfill import LocalDerivativeRegenerator
from photo_diary.config import Settings, load_settings
from photo_diary.derivatives import DerivativeEncoder
from photo_diary.metadata_store import build_metadata_store
from photo_diary.object_store import build_object_store
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "task_queue"})


@lru_cache(maxsize=1)
def _load_settings() -> Settings:
    return load_settings()


def _init_celery() -> Celery:
    settings = _load_settings()
    app = Celery("photo_diary")
    app.conf.update(
        broker_url=settings.queues.broker_url,
        result_backend=settings.queues.result_backend,
        worker_concurrency=settings.queues.default_concurrency,
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_default_queue=settings.queues.backfill_queue,
        task_routes={
            "photo_diary.task_queue.regenerate_derivatives": {"queue": settings.queues.backfill_queue},
        },
    )
    return app


celery_app = _init_celery()


@lru_cache(maxsize=1)
def _regenerator() -> LocalDerivativeRegenerator:
    settings = _load_settings()
    return LocalDerivativeRegenerator(
        build_metadata_store(settings),
        build_object_store(settings),
        DerivativeEncoder(settings.derivatives),
    )


@celery_app.task(name="photo_diary.task_queue.regenerate_derivatives", acks_late=True)
def regenerate_derivatives(owner_id: str, photo_ids: list[str]) -> list[dict]:
    """Regenerate missing derivatives for ``photo_ids`` owned by ``owner_id``."""

    results = _regenerator().regenerate(owner_id, photo_ids)
    LOGGER.info(
        "task_regenerate_complete",
        extra={"owner_id": owner_id, "requested": len(photo_ids), "results": len(results)},
    )
    return [result.to_dict() for result in results]


__all__ = ["celery_app", "regenerate_derivatives"]
