"""Per-process TTL cache.

Best-effort accelerator for hot reads (profile lookups). Entries live only as
long as the process; nothing here is a source of truth.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    data: T
    expires_at: float
    created_at: float


class EphemeralCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        if self._clock() > entry.expires_at:
            del self._entries[key]
            self._misses += 1
            return None

        self._hits += 1
        return entry.data

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(data=value, expires_at=now + ttl_seconds, created_at=now)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": (self._hits / total) if total else 0.0,
        }
