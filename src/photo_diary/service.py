"""Assemble the pipeline components from settings and wire them together."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from photo_diary.backfill import BackfillReconciler, DerivativeRegenerator, build_regenerator
from photo_diary.capture import CaptureNormalizer
from photo_diary.clock import resolve_timezone
from photo_diary.config import Settings, load_settings
from photo_diary.db_helpers import redact_database_url
from photo_diary.deletion import delete_photo
from photo_diary.derivatives import DerivativeEncoder
from photo_diary.gallery import Gallery, GalleryFeed, UrlResolver, build_gallery, build_url_resolver
from photo_diary.metadata_store import MetadataStore, build_metadata_store
from photo_diary.object_store import ObjectStore, build_object_store
from photo_diary.photo import Photo, PhotoFilter
from photo_diary.quota import EntitlementProvider, QuotaGuard
from photo_diary.update_queue import UpdateQueue
from photo_diary.upload import BatchUpload, UploadListener, UploadPipeline
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "service"})


@dataclass
class ViewerSession:
    """A gallery feed and the reconciler that backfills what it shows."""

    feed: GalleryFeed
    reconciler: BackfillReconciler


class PhotoDiary:
    """Entry point holding one instance of every collaborator.

    Uploads committed by the pipeline are published to every open session of
    the same owner. All sessions share one update queue.
    """

    def __init__(
        self,
        settings: Settings,
        metadata: MetadataStore,
        objects: ObjectStore,
        *,
        entitlements: EntitlementProvider | None = None,
        regenerator: DerivativeRegenerator | None = None,
    ) -> None:
        self.settings = settings
        self.metadata = metadata
        self.objects = objects
        self.updates = UpdateQueue()
        tz = resolve_timezone(settings.quota.timezone)
        self.encoder = DerivativeEncoder(settings.derivatives)
        self.quota = QuotaGuard(metadata, daily_limit=settings.quota.daily_limit, tz=tz, entitlements=entitlements)
        self.pipeline = UploadPipeline(
            metadata,
            objects,
            self.quota,
            CaptureNormalizer(tz),
            self.encoder,
            config=settings.upload,
            publish=self._publish,
        )
        self.resolver: UrlResolver = build_url_resolver(settings, objects, self.updates)
        self.gallery: Gallery = build_gallery(settings, metadata, self.resolver)
        self.regenerator = regenerator or build_regenerator(settings, metadata, objects, self.encoder)
        self._sessions: list[ViewerSession] = []
        self._lock = threading.Lock()

    def open_session(self, owner_id: str, photo_filter: PhotoFilter | None = None) -> ViewerSession:
        reconciler = BackfillReconciler(
            self.regenerator,
            updates=self.updates,
            batch_size=self.settings.backfill.batch_size,
        )
        feed = GalleryFeed(
            self.gallery,
            owner_id,
            photo_filter=photo_filter,
            updates=self.updates,
            on_page=reconciler.observe,
        )
        reconciler.set_merge_callback(feed.merge_regenerated)
        session = ViewerSession(feed=feed, reconciler=reconciler)
        with self._lock:
            self._sessions.append(session)
        return session

    def close_session(self, session: ViewerSession) -> None:
        with self._lock:
            if session in self._sessions:
                self._sessions.remove(session)
        session.reconciler.close()

    def _sessions_for(self, owner_id: str) -> list[ViewerSession]:
        with self._lock:
            return [session for session in self._sessions if session.feed.owner_id == owner_id]

    def _publish(self, photo: Photo) -> None:
        for session in self._sessions_for(photo.owner_id):
            session.feed.add_optimistic(photo)

    def batch(self, owner_id: str, *, concurrency: int | None = None, listener: UploadListener | None = None) -> BatchUpload:
        return BatchUpload(self.pipeline, owner_id, concurrency=concurrency, listener=listener)

    def update_notes(self, owner_id: str, photo_id: str, notes: str | None) -> Photo | None:
        return self.metadata.update_notes(owner_id, photo_id, notes)

    def delete(self, owner_id: str, photo_id: str) -> bool:
        deleted = delete_photo(self.metadata, self.objects, owner_id, photo_id)
        for session in self._sessions_for(owner_id):
            session.feed.remove(photo_id)
        return deleted

    def close(self) -> None:
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.reconciler.close()
        self.pipeline.close()


def build_photo_diary(settings: Settings | None = None, **kwargs) -> PhotoDiary:
    """Construct a :class:`PhotoDiary` from settings (loaded from disk when omitted)."""

    settings = settings or load_settings()
    LOGGER.info(
        "photo_diary_init",
        extra={"storage_backend": settings.storage.backend, "database": redact_database_url(settings.databases.primary_url)},
    )
    return PhotoDiary(settings, build_metadata_store(settings), build_object_store(settings), **kwargs)


__all__ = ["ViewerSession", "PhotoDiary", "build_photo_diary"]
