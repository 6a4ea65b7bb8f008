"""In-memory TTL cache for frequently read query results.

Entries expire lazily: nothing sweeps the map, an expired entry is dropped the
next time it is read. When the map is full the oldest-inserted entry is evicted
(insertion order, not access recency), so this is FIFO rather than LRU.

One instance is built per application and handed to route handlers through
``app.state``; there is no module-level cache.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, TypeVar

from .logging import get_logger, log_cache_operation

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_SIZE = 100
DEFAULT_TTL_MINUTES = 5

_MISS = object()


@dataclass
class CacheEntry:
    data: Any
    timestamp: float  # seconds since epoch
    ttl: float  # seconds


@dataclass
class _KeyLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class CacheKeys:
    """Key builders for the query patterns that get cached."""

    @staticmethod
    def products(page: int, limit: int, category: Optional[str] = None,
                 featured: Optional[bool] = None) -> str:
        return f"products:{page}:{limit}:{category or 'all'}:{featured or 'all'}"

    @staticmethod
    def admin_products(page: int, limit: int, search: Optional[str] = None,
                       category_id: Optional[str] = None) -> str:
        return f"admin_products:{page}:{limit}:{search or 'all'}:{category_id or 'all'}"

    @staticmethod
    def categories(lang: str) -> str:
        return f"categories:{lang}"

    @staticmethod
    def products_by_ids(ids: Iterable[str]) -> str:
        return f"products_by_ids:{','.join(sorted(ids))}"

    @staticmethod
    def admin_orders(page: int, limit: int, status: Optional[str] = None) -> str:
        return f"admin_orders:{page}:{limit}:{status or 'all'}"

    @staticmethod
    def wishlist(user_id: str) -> str:
        return f"wishlist:{user_id}"

    @staticmethod
    def coupons() -> str:
        return "coupons:all"


class SimpleCache:
    """Bounded string-keyed cache with per-entry TTL."""

    keys = CacheKeys

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE,
                 default_ttl_minutes: float = DEFAULT_TTL_MINUTES,
                 clock: Callable[[], float] = time.time):
        self.max_size = max_size
        self.default_ttl_minutes = default_ttl_minutes
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._key_locks: Dict[str, _KeyLock] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self._lookup(key) is not _MISS

    def set(self, key: str, data: Any, ttl_minutes: Optional[float] = None) -> None:
        if ttl_minutes is None:
            ttl_minutes = self.default_ttl_minutes

        with self._lock:
            if len(self._entries) >= self.max_size:
                oldest_key = next(iter(self._entries), None)
                if oldest_key is not None:
                    del self._entries[oldest_key]
                    log_cache_operation(logger, "evict", oldest_key)

            self._entries[key] = CacheEntry(
                data=data,
                timestamp=self._clock(),
                ttl=ttl_minutes * 60,
            )
        log_cache_operation(logger, "set", key, ttl_minutes=ttl_minutes)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._lookup(key)
        if value is _MISS:
            return default
        return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
        log_cache_operation(logger, "delete", key)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("Cache cleared", entries=count)

    def with_cache(self, key: str, producer: Callable[[], T],
                   ttl_minutes: Optional[float] = None) -> T:
        """Return the cached value for ``key`` or produce, store and return it.

        Concurrent misses on the same key are coalesced: the first caller runs
        the producer while the others wait on that key's lock and then read
        the stored value. Locks exist only while a key is being produced.
        Producers may call ``with_cache`` for other keys, but two producers
        that each need the other's key will wait on each other forever.
        If the producer raises, the error reaches the caller that ran it and
        nothing is stored.
        """
        value = self._lookup(key)
        if value is not _MISS:
            return value

        with self._key_lock(key):
            value = self._lookup(key, count=False)
            if value is not _MISS:
                return value

            result = producer()
            self.set(key, result, ttl_minutes)
            return result

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "maxSize": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "keys": list(self._entries),
            }

    def _lookup(self, key: str, count: bool = True) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry.timestamp > entry.ttl:
                del self._entries[key]
                log_cache_operation(logger, "expire", key)
                entry = None

            if count:
                if entry is None:
                    self.misses += 1
                else:
                    self.hits += 1

        if count:
            log_cache_operation(logger, "get", key, hit=entry is not None)
        return _MISS if entry is None else entry.data

    @contextmanager
    def _key_lock(self, key: str) -> Iterator[None]:
        with self._lock:
            slot = self._key_locks.get(key)
            if slot is None:
                slot = self._key_locks[key] = _KeyLock()
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._lock:
                slot.users -= 1
                if slot.users == 0:
                    del self._key_locks[key]
