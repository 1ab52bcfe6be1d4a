"""TTL cache for eligibility results."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, NamedTuple, Optional, Protocol

from cachetools import TLRUCache

ELIGIBILITY_KEY_PREFIX = "insurance:eligibility:"


def eligibility_cache_key(record_id: str) -> str:
    return f"{ELIGIBILITY_KEY_PREFIX}{record_id}"


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl: float) -> None: ...


class _Entry(NamedTuple):
    value: Any
    ttl: float


def _expires_at(_key: str, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class InMemoryCache:
    """Bounded cache with a per-entry TTL, backed by ``cachetools.TLRUCache``.

    When full, the least recently used entry is evicted.  ``clock`` is
    injectable so tests can move time forward.
    """

    def __init__(self, max_size: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        self._max_size = max_size
        self._entries: TLRUCache[str, _Entry] = TLRUCache(maxsize=max_size, ttu=_expires_at, timer=clock)
        # cachetools caches are not thread-safe
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = _Entry(value, ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            self._entries.expire()
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total * 100, 2) if total > 0 else 0.0,
                "max_size": self._max_size,
            }
