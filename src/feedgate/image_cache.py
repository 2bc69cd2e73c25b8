"""In-memory image cache with TTL expiry and insertion-order eviction.

Expired entries are purged lazily on ``get``. When ``put`` takes the cache
past capacity, the oldest *inserted* entry is evicted; reads do not refresh
an entry's position.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Callable

    from feedgate.models.cache import CachedImage

log = structlog.get_logger()


class ImageCache:
    """Keyed by canonical absolute URL. ``clock`` returns seconds."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 15 * 60,
        capacity: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.capacity = capacity
        self._clock = clock
        self._entries: dict[str, CachedImage] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def expiry(self) -> float:
        """Expiry timestamp for an entry stored now."""
        return self._clock() + self.ttl_seconds

    def get(self, key: str) -> CachedImage | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                log.debug("image_cache_expired", key=key)
                return None
            return entry

    def put(self, key: str, entry: CachedImage) -> None:
        with self._lock:
            # Re-inserting moves the key to the newest position.
            self._entries.pop(key, None)
            self._entries[key] = entry
            while len(self._entries) > self.capacity:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
                log.debug("image_cache_evicted", key=oldest)

