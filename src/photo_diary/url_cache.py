"""Signed display URL cache keyed by photo and derivative slot."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from photo_diary.photo import Variant

CacheKey = tuple[str, Variant]


@dataclass(frozen=True)
class CacheEntry:
    """A resolved URL; ``expires_at`` is ``None`` for public, non-expiring URLs."""

    url: str
    expires_at: float | None = None


class SignedUrlCache:
    """Map ``(photo_id, variant)`` to the last URL handed out.

    Entries are considered stale ``safety_margin`` seconds before they expire
    so a URL never reaches a renderer with less than that left.
    """

    def __init__(self, safety_margin: float = 3600.0) -> None:
        self._safety_margin = max(0.0, float(safety_margin))
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def safety_margin(self) -> float:
        return self._safety_margin

    def is_valid(self, entry: CacheEntry, now: float) -> bool:
        if entry.expires_at is None:
            return True
        return now < entry.expires_at - self._safety_margin

    def get(self, key: CacheKey, now: float) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or not self.is_valid(entry, now):
            return None
        return entry

    def put(self, key: CacheKey, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry

    def invalidate(self, photo_id: str) -> None:
        with self._lock:
            for key in [key for key in self._entries if key[0] == photo_id]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["CacheKey", "CacheEntry", "SignedUrlCache"]
