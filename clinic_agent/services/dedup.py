"""Thread-safe, bounded, time-expiring set used to drop duplicate webhooks.

Design decisions
────────────────
• **OrderedDict** keyed by message id, ordered by insertion time, so that
  expired entries are always at the front and can be evicted in O(1).
• **TTL** (default 5 min): the messaging gateway re-delivers a webhook
  within seconds, never hours, so older ids can be forgotten.
• **max_size** ceiling: under a burst the oldest ids are evicted first even
  if they have not expired yet, so memory stays bounded.
• **threading.Lock** because webhooks are handled on worker threads.

>>> seen = ExpiringSet(ttl_seconds=300)
>>> seen.add_if_new("3EB0C431C26A1916C4A9")
True
>>> seen.add_if_new("3EB0C431C26A1916C4A9")
False
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_MAX_SIZE = 10_000


class ExpiringSet:
    """Set of string keys that forget themselves after ``ttl_seconds``."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        # key → insertion timestamp
        self._store: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def _evict_expired(self, now: float) -> None:
        while self._store:
            key, inserted = next(iter(self._store.items()))
            if now - inserted < self._ttl:
                break
            self._store.popitem(last=False)

    def add_if_new(self, key: str) -> bool:
        """Insert *key*; return ``False`` if it was already present."""
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            if key in self._store:
                return False
            while len(self._store) >= self._max_size:
                evicted, _ = self._store.popitem(last=False)
                logger.debug("Dedup: evicted %s (size limit)", evicted)
            self._store[key] = now
            return True

    def __contains__(self, key: str) -> bool:
        with self._lock:
            self._evict_expired(self._clock())
            return key in self._store

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired(self._clock())
            return len(self._store)
