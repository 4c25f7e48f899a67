"""Cursor-paginated gallery with signed thumbnail URLs.

``Gallery`` answers page queries. ``GalleryFeed`` holds one viewer session's
loaded list and applies every mutation (page appends, optimistic inserts,
backfill merges, removals) through a shared :class:`UpdateQueue`.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from photo_diary.config import Settings
from photo_diary.errors import ObjectStoreError, SigningError
from photo_diary.metadata_store import MetadataStore, PageCursor
from photo_diary.object_store import ObjectStore
from photo_diary.photo import DerivativePaths, Photo, PhotoFilter, SortDirection, Variant
from photo_diary.update_queue import UpdateQueue
from photo_diary.url_cache import CacheEntry, SignedUrlCache
from utils.logging import get_logger

if TYPE_CHECKING:
    from photo_diary.backfill import RegeneratedDerivatives

LOGGER = get_logger(__name__, extra={"component": "gallery"})

GalleryCursor = PageCursor


class Purpose(str, Enum):
    GRID = "grid"
    FULLSCREEN = "fullscreen"
    COMPARE = "compare"
    EXPORT = "export"


# Grid cells never substitute a larger derivative for a missing thumbnail.
PURPOSE_CHAINS: dict[Purpose, tuple[Variant, ...]] = {
    Purpose.GRID: (Variant.THUMBNAIL,),
    Purpose.FULLSCREEN: (Variant.MEDIUM, Variant.ORIGINAL),
    Purpose.COMPARE: (Variant.MEDIUM, Variant.ORIGINAL),
    Purpose.EXPORT: (Variant.ORIGINAL, Variant.MEDIUM),
}


@dataclass(frozen=True)
class ResolvedUrl:
    """A display URL, or a placeholder when ``url`` is ``None``."""

    url: str | None
    variant: Variant | None = None
    expires_at: float | None = None

    @property
    def is_placeholder(self) -> bool:
        return self.url is None


PLACEHOLDER = ResolvedUrl(url=None)


class UrlResolver:
    """Produce display URLs along a purpose's fallback chain, reusing cached signatures."""

    def __init__(
        self,
        objects: ObjectStore,
        cache: SignedUrlCache,
        *,
        ttl_seconds: int = 7 * 24 * 3600,
        updates: UpdateQueue | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._objects = objects
        self._cache = cache
        self._ttl = max(1, int(ttl_seconds))
        self._updates = updates or UpdateQueue()
        self._clock = clock

    @property
    def cache(self) -> SignedUrlCache:
        return self._cache

    def _store(self, photo_id: str, variant: Variant, entry: CacheEntry) -> None:
        self._updates.call(self._cache.put, (photo_id, variant), entry)

    def _sign(self, photo_id: str, variant: Variant, path: str) -> CacheEntry:
        now = self._clock()
        cached = self._cache.get((photo_id, variant), now)
        if cached is not None:
            return cached
        try:
            if self._objects.is_public:
                url = self._objects.public_url(path)
                if url is None:
                    raise SigningError(f"no public url for {path}")
                entry = CacheEntry(url=url)
            else:
                entry = CacheEntry(url=self._objects.sign_url(path, self._ttl), expires_at=now + self._ttl)
        except ObjectStoreError as exc:
            raise SigningError(f"cannot sign {path}: {exc}") from exc
        self._store(photo_id, variant, entry)
        return entry

    def resolve(self, photo: Photo, purpose: Purpose) -> ResolvedUrl:
        for variant in PURPOSE_CHAINS[purpose]:
            path = photo.derivatives.get(variant)
            if not path:
                continue
            try:
                entry = self._sign(photo.id, variant, path)
            except SigningError as exc:
                LOGGER.warning(
                    "url_sign_failed",
                    extra={"photo_id": photo.id, "variant": variant.value, "purpose": purpose.value, "error": str(exc)},
                )
                continue
            return ResolvedUrl(url=entry.url, variant=variant, expires_at=entry.expires_at)
        return PLACEHOLDER

    def remember(self, photo_id: str, variant: Variant, url: str, expires_at: float | None) -> None:
        """Seed the cache with a URL produced elsewhere (e.g. by regeneration)."""

        self._store(photo_id, variant, CacheEntry(url=url, expires_at=expires_at))

    def forget(self, photo_id: str) -> None:
        self._updates.call(self._cache.invalidate, photo_id)


@dataclass(frozen=True)
class GalleryItem:
    photo: Photo
    thumbnail: ResolvedUrl


@dataclass(frozen=True)
class GalleryPage:
    items: list[GalleryItem]
    next_cursor: PageCursor | None
    has_more: bool


class Gallery:
    """Page queries over an owner's photos, thumbnails resolved per item."""

    def __init__(
        self,
        metadata: MetadataStore,
        resolver: UrlResolver,
        *,
        page_size: int = 40,
        sort: SortDirection = SortDirection.DESC,
    ) -> None:
        self._metadata = metadata
        self._resolver = resolver
        self._page_size = max(1, int(page_size))
        self._sort = sort

    @property
    def resolver(self) -> UrlResolver:
        return self._resolver

    @property
    def page_size(self) -> int:
        return self._page_size

    @property
    def sort(self) -> SortDirection:
        return self._sort

    def page(
        self,
        owner_id: str,
        photo_filter: PhotoFilter | None = None,
        cursor: PageCursor | None = None,
        page_size: int | None = None,
        sort: SortDirection | None = None,
    ) -> GalleryPage:
        size = max(1, int(page_size or self._page_size))
        rows = self._metadata.select_page(
            owner_id,
            photo_filter or PhotoFilter(),
            cursor,
            size + 1,
            sort or self._sort,
        )
        has_more = len(rows) > size
        rows = rows[:size]
        items = [GalleryItem(photo=photo, thumbnail=self._resolver.resolve(photo, Purpose.GRID)) for photo in rows]
        next_cursor = PageCursor.after(rows[-1]) if has_more else None
        LOGGER.debug(
            "gallery_page",
            extra={"owner_id": owner_id, "items": len(items), "has_more": has_more, "after": cursor is not None},
        )
        return GalleryPage(items=items, next_cursor=next_cursor, has_more=has_more)


class GalleryFeed:
    """One viewer session's loaded photo list.

    The list stays sorted by ``(display_timestamp, uploaded_at, id)`` in the
    feed's direction and never holds two photos with the same id.

    Optimistic inserts, regenerated paths and removals are journaled until the
    next refresh. Pages fetched while those land are rebased on the journal,
    so a page read from the store never undoes a newer local update.
    """

    def __init__(
        self,
        gallery: Gallery,
        owner_id: str,
        *,
        photo_filter: PhotoFilter | None = None,
        sort: SortDirection | None = None,
        updates: UpdateQueue | None = None,
        on_page: Callable[[list[Photo]], object] | None = None,
    ) -> None:
        self._gallery = gallery
        self._owner_id = owner_id
        self._filter = photo_filter or PhotoFilter()
        self._sort = sort or gallery.sort
        self._updates = updates or UpdateQueue()
        self._on_page = on_page
        self._photos: list[Photo] = []
        self._cursor: PageCursor | None = None
        self._has_more = True
        self._generation = 0
        self._inserted: dict[str, Photo] = {}
        self._regenerated: dict[str, DerivativePaths] = {}
        self._removed: set[str] = set()

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def photos(self) -> list[Photo]:
        return self._updates.call(lambda: list(self._photos))

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def updates(self) -> UpdateQueue:
        return self._updates

    def set_page_listener(self, on_page: Callable[[list[Photo]], object] | None) -> None:
        self._on_page = on_page

    def _precedes(self, photo: Photo, other: Photo) -> bool:
        if self._sort is SortDirection.DESC:
            return photo.sort_key > other.sort_key
        return photo.sort_key < other.sort_key

    def _fetch(self, cursor: PageCursor | None) -> GalleryPage:
        return self._gallery.page(self._owner_id, self._filter, cursor, sort=self._sort)

    def _notify_page(self, photos: list[Photo]) -> None:
        if self._on_page is not None and photos:
            self._on_page(photos)

    def refresh(self) -> GalleryPage:
        """Reload from the first page, replacing everything loaded."""

        generation = self._updates.call(self._bump_generation)
        page = self._fetch(None)

        def apply() -> None:
            if generation != self._generation:
                return
            self._photos = self._rebase(item.photo for item in page.items)
            self._cursor = page.next_cursor
            self._has_more = page.has_more
            for photo in self._inserted.values():
                self._insert_sorted(self._rebase([photo])[0])

        self._updates.call(apply)
        self._notify_page([item.photo for item in page.items])
        return page

    def _bump_generation(self) -> int:
        # Everything before this point is already visible in the store.
        self._generation += 1
        self._inserted.clear()
        self._regenerated.clear()
        self._removed.clear()
        return self._generation

    def _rebase(self, photos: Iterable[Photo]) -> list[Photo]:
        rebased: list[Photo] = []
        for photo in photos:
            if photo.id in self._removed:
                continue
            paths = self._regenerated.get(photo.id)
            rebased.append(photo.with_derivatives(paths) if paths is not None else photo)
        return rebased

    def _insert_sorted(self, photo: Photo) -> bool:
        if any(existing.id == photo.id for existing in self._photos):
            return False
        index = next(
            (i for i, existing in enumerate(self._photos) if self._precedes(photo, existing)),
            len(self._photos),
        )
        if index == len(self._photos) and self._has_more and self._photos:
            return False
        self._photos.insert(index, photo)
        return True

    def load_more(self) -> GalleryPage:
        """Append the next page; a no-op once the end has been reached."""

        generation, cursor, has_more = self._updates.call(lambda: (self._generation, self._cursor, self._has_more))
        if not has_more:
            return GalleryPage(items=[], next_cursor=None, has_more=False)
        if cursor is None and generation == 0:
            return self.refresh()
        page = self._fetch(cursor)

        def apply() -> list[Photo]:
            if generation != self._generation or cursor != self._cursor:
                return []
            known = {photo.id for photo in self._photos}
            fresh = [photo for photo in self._rebase(item.photo for item in page.items) if photo.id not in known]
            self._photos.extend(fresh)
            self._cursor = page.next_cursor
            self._has_more = page.has_more
            return fresh

        appended = self._updates.call(apply)
        self._notify_page(appended)
        return page

    def add_optimistic(self, photo: Photo) -> bool:
        """Insert a just-uploaded photo at its sorted position.

        Skipped when it does not match the feed's filter, is already present,
        or sorts past the loaded window while more pages remain.
        """

        if photo.owner_id != self._owner_id or not self._filter.matches(photo):
            return False

        def apply() -> bool:
            if photo.id in self._removed:
                return False
            self._inserted[photo.id] = photo
            return self._insert_sorted(self._rebase([photo])[0])

        inserted = self._updates.call(apply)
        if inserted:
            LOGGER.debug("gallery_optimistic_insert", extra={"photo_id": photo.id})
        return inserted

    def merge_regenerated(self, results: Iterable["RegeneratedDerivatives"]) -> int:
        """Fold regenerated derivative paths and URLs into loaded photos."""

        results = list(results)

        def apply() -> int:
            merged = 0
            by_id = {result.photo_id: result for result in results}
            for photo_id, result in by_id.items():
                known = self._regenerated.get(photo_id)
                self._regenerated[photo_id] = known.fill_missing(result.paths()) if known else result.paths()
            for index, photo in enumerate(self._photos):
                result = by_id.get(photo.id)
                if result is None:
                    continue
                self._photos[index] = photo.with_derivatives(result.paths())
                resolver = self._gallery.resolver
                if result.thumbnail_url:
                    resolver.remember(photo.id, Variant.THUMBNAIL, result.thumbnail_url, result.expires_at)
                if result.medium_url:
                    resolver.remember(photo.id, Variant.MEDIUM, result.medium_url, result.expires_at)
                merged += 1
            return merged

        merged = self._updates.call(apply)
        LOGGER.info("gallery_backfill_merged", extra={"owner_id": self._owner_id, "merged": merged})
        return merged

    def remove(self, photo_id: str) -> bool:
        def apply() -> bool:
            before = len(self._photos)
            self._removed.add(photo_id)
            self._inserted.pop(photo_id, None)
            self._photos = [photo for photo in self._photos if photo.id != photo_id]
            self._gallery.resolver.forget(photo_id)
            return len(self._photos) != before

        return self._updates.call(apply)

    def find(self, photo_id: str) -> Photo | None:
        return self._updates.call(lambda: next((p for p in self._photos if p.id == photo_id), None))

    def thumbnail_for(self, photo: Photo) -> ResolvedUrl:
        return self._gallery.resolver.resolve(photo, Purpose.GRID)

    def url_for(self, photo_id: str, purpose: Purpose) -> ResolvedUrl:
        """Resolve a display URL on demand; raises ``KeyError`` for photos not loaded."""

        photo = self.find(photo_id)
        if photo is None:
            raise KeyError(photo_id)
        return self._gallery.resolver.resolve(photo, purpose)


def build_url_resolver(settings: Settings, objects: ObjectStore, updates: UpdateQueue | None = None) -> UrlResolver:
    ttl = max(1, settings.storage.signed_url_ttl_seconds)
    margin = min(max(0, settings.storage.signed_url_margin_seconds), ttl - 1)
    return UrlResolver(objects, SignedUrlCache(safety_margin=margin), ttl_seconds=ttl, updates=updates)


def build_gallery(settings: Settings, metadata: MetadataStore, resolver: UrlResolver) -> Gallery:
    return Gallery(
        metadata,
        resolver,
        page_size=settings.gallery.page_size,
        sort=SortDirection(settings.gallery.sort),
    )


__all__ = [
    "GalleryCursor",
    "Purpose",
    "PURPOSE_CHAINS",
    "ResolvedUrl",
    "PLACEHOLDER",
    "UrlResolver",
    "GalleryItem",
    "GalleryPage",
    "Gallery",
    "GalleryFeed",
    "build_url_resolver",
    "build_gallery",
]
