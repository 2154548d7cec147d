"""
MedEvidence Cache Module

Bounded in-process cache for query embeddings.

- Capacity is constructor-injected (default EMBEDDING_CACHE_SIZE, 100)
- Oldest insertion is evicted on overflow
- Optional TTL with an injectable clock so tests can control expiry
- Hit/miss counters for the /metrics endpoint
"""

import os
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Generic, TypeVar

# ============================================
# Constants
# ============================================

DEFAULT_CAPACITY = int(os.environ.get("EMBEDDING_CACHE_SIZE", "100"))

K = TypeVar("K")
V = TypeVar("V")


# ============================================
# Bounded Cache
# ============================================


class BoundedCache(Generic[K, V]):
    """Insertion-ordered cache with a fixed capacity.

    Writes are last-write-wins. Re-setting an existing key refreshes its
    value and timestamp but keeps its eviction position.

    Attributes:
        capacity: Maximum number of entries held.
        ttl_seconds: Entry lifetime in seconds, or None for no expiry.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            capacity: Maximum entries; must be at least 1.
            ttl_seconds: Optional time-to-live for each entry.
            clock: Monotonic time source, injectable for tests.
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[K, tuple[V, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _expired(self, stored_at: float) -> bool:
        if self.ttl_seconds is None:
            return False
        return self._clock() - stored_at >= self.ttl_seconds

    def get(self, key: K) -> V | None:
        """Return the cached value, or None on miss or expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            value, stored_at = entry
            if self._expired(stored_at):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: K, value: V) -> None:
        """Store a value, evicting the oldest insertion when full."""
        with self._lock:
            if key in self._entries:
                self._entries[key] = (value, self._clock())
                return
            while len(self._entries) >= self.capacity:
                self._entries.popitem(last=False)
            self._entries[key] = (value, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            return entry is not None and not self._expired(entry[1])

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, int]:
        """Snapshot of size and hit/miss counters."""
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self.capacity,
                "hits": self.hits,
                "misses": self.misses,
            }
