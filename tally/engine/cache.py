"""
tally.engine.cache — TTL Cache for Leaderboards
================================================

Leaderboards are recomputed from aggregates on read.  Hosts that serve
them on every page view can keep the last result for a short, explicit
TTL.  Writers call :meth:`LeaderboardCache.invalidate` after mutations
they want visible immediately; otherwise entries simply expire.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Hashable
from typing import Any

logger = logging.getLogger(__name__)


class LeaderboardCache:
    """Thread-safe key → value cache with a fixed time-to-live.

    Usage:
        cache = LeaderboardCache(ttl=300)
        board = cache.get_or_compute(("referrals", 50), lambda: compute())
        cache.invalidate()          # drop everything
    """

    def __init__(
        self, ttl: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        # key → (expires_at, value)
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def get(self, key: Hashable) -> Any | None:
        if not self.enabled:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl, value)

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        """Return the cached value for *key*, computing and storing on a miss.

        ``compute`` runs outside the lock; two concurrent misses may both
        compute, and the last one wins.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.set(key, value)
        return value

    def invalidate(self, key: Hashable | None = None) -> None:
        """Drop *key*, or every entry when *key* is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)
        logger.debug("LeaderboardCache invalidated: %s", "all" if key is None else key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
