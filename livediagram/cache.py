"""Bounded in-memory TTL cache shared by collectors and the snapshot layer."""

from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple


@dataclass(frozen=True)
class CacheStats:
    """Basic cache metrics for the status endpoint."""

    label: str
    size: int
    capacity: int
    hits: int
    misses: int
    ttl_seconds: float


class TTLCache:
    """
    TTL cache with a fixed capacity and coarse-grained locking.

    When full, the oldest *inserted* entry is evicted (insertion order, not
    access recency). An entry is served while ``now <= expires_at`` and is
    dropped on the first read after that.
    """

    def __init__(
        self,
        capacity: int = 50,
        ttl_seconds: float = 60.0,
        *,
        label: str = "ttl_cache",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.capacity = max(1, int(capacity))
        self.ttl_seconds = float(ttl_seconds)
        self.label = label
        self._clock = clock
        self._lock = threading.Lock()
        self._store: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            expires_at, value = entry
            if self._clock() > expires_at:
                del self._store[key]
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: str, value: Any, *, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else float(ttl_seconds)
        with self._lock:
            # Re-inserting moves the key to the back of the eviction order
            self._store.pop(key, None)
            while len(self._store) >= self.capacity:
                self._store.popitem(last=False)
            self._store[key] = (self._clock() + ttl, value)

    def invalidate(self, key: Optional[str] = None) -> bool:
        with self._lock:
            if key is None:
                had_entries = bool(self._store)
                self._store.clear()
                return had_entries
            return self._store.pop(key, None) is not None

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                label=self.label,
                size=len(self._store),
                capacity=self.capacity,
                hits=self._hits,
                misses=self._misses,
                ttl_seconds=self.ttl_seconds,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


def identity_key_prefix(identity: Optional[str]) -> str:
    """Short SHA-256 prefix of a bearer identity; ``anon`` when there is none."""
    if not identity:
        return "anon"
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:16]
