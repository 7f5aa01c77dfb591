"""In-memory TTL caches for GraphQL responses."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    value: Any
    stored_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at <= self.ttl


class TTLCache:
    """Keyed response cache with a per-entry time-to-live in seconds.

    Entries are dropped lazily when read after expiry. Only ever touched from
    the event loop thread, so there is no locking.
    """

    def __init__(self, default_ttl: float, *, clock: Clock = time.monotonic, max_entries: int = 512) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[Any, CacheEntry] = {}

    def get(self, key: Any) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: Any, value: Any, ttl: float | None = None) -> None:
        if len(self._entries) >= self._max_entries and key not in self._entries:
            self._evict()
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock(), ttl=self.default_ttl if ttl is None else ttl)

    def _evict(self) -> None:
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
        for key in stale:
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            oldest = min(self._entries, key=lambda key: self._entries[key].stored_at)
            del self._entries[oldest]

    def clear(self) -> None:
        if self._entries:
            LOGGER.debug("Dropping %d cached responses", len(self._entries))
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None
