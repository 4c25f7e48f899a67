"""Per-owner daily upload ceiling."""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import tzinfo
from typing import Protocol

from photo_diary.clock import local_day_bounds
from photo_diary.errors import MetadataStoreError, QuotaExceeded
from photo_diary.metadata_store import MetadataStore
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "quota"})


class EntitlementProvider(Protocol):
    """External subscription state lookup."""

    def is_premium(self, owner_id: str) -> bool: ...


class NoEntitlements:
    """Treat every account as non-premium."""

    def is_premium(self, owner_id: str) -> bool:
        return False


class QuotaGuard:
    """Count today's uploads and enforce the daily ceiling.

    Counting uses the store's ``uploaded_at`` so a client clock cannot move an
    upload into another day. Lookup failures fail open: the limit is
    advisory and must not block uploads when the store is degraded.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        *,
        daily_limit: int,
        tz: tzinfo,
        entitlements: EntitlementProvider | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._metadata = metadata
        self._daily_limit = max(0, int(daily_limit))
        self._tz = tz
        self._entitlements = entitlements or NoEntitlements()
        self._clock = clock

    def day_bounds(self, as_of: float | None = None) -> tuple[float, float]:
        return local_day_bounds(self._clock() if as_of is None else as_of, self._tz)

    def check_daily_quota(self, owner_id: str, as_of: float | None = None) -> int:
        """Return how many photos ``owner_id`` uploaded on the local day of ``as_of``."""

        start, end = self.day_bounds(as_of)
        try:
            return self._metadata.count_uploaded_between(owner_id, start, end)
        except (MetadataStoreError, TimeoutError) as exc:
            LOGGER.warning("quota_check_failed_open", extra={"owner_id": owner_id, "error": str(exc)})
            return 0

    def limit_for(self, owner_id: str) -> int | None:
        """Return the daily ceiling for ``owner_id``; ``None`` means unbounded."""

        try:
            premium = self._entitlements.is_premium(owner_id)
        except Exception as exc:  # external collaborator; any failure fails open
            LOGGER.warning("entitlement_lookup_failed_open", extra={"owner_id": owner_id, "error": str(exc)})
            return None
        return None if premium else self._daily_limit

    def ensure_capacity(self, owner_id: str, as_of: float | None = None, in_flight: int = 0) -> int:
        """Raise :class:`QuotaExceeded` when no upload slot is left; return today's count otherwise."""

        limit = self.limit_for(owner_id)
        if limit is None:
            return 0
        count = self.check_daily_quota(owner_id, as_of)
        if count + in_flight >= limit:
            LOGGER.info(
                "quota_exceeded",
                extra={"owner_id": owner_id, "count": count, "in_flight": in_flight, "limit": limit},
            )
            raise QuotaExceeded(count + in_flight, limit)
        return count


__all__ = ["EntitlementProvider", "NoEntitlements", "QuotaGuard"]
