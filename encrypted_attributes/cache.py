"""
Bounded, expiring caches for resolved recipient key sets.

This module provides:
- CacheLRU: Thread-safe LRU cache with optional TTL and read-through loading
- RecipientCache: One CacheLRU per directory category (clients, nodes, users)

Resolving "all admin clients" or "all webapp nodes" costs a directory round
trip, so a batch of operations over many attributes shares one
RecipientCache. Each category has its own lock: clients lookups never wait
on nodes lookups.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Iterable, Optional, TypeVar

from dotenv import find_dotenv, load_dotenv

from .errors import ArgumentError, ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_MAX_SIZE = 1024

CLIENTS = "clients"
NODES = "nodes"
USERS = "users"
CATEGORIES = (CLIENTS, NODES, USERS)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """Cached value with the monotonic time it was stored."""

    value: V
    stored_at: float


def _check_max_size(max_size: int) -> int:
    if isinstance(max_size, bool) or not isinstance(max_size, int) or max_size < 0:
        raise ArgumentError(f"Invalid cache size: {max_size!r}")
    return max_size


def _check_ttl(ttl: Optional[float]) -> Optional[float]:
    if ttl is None:
        return None
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0:
        raise ArgumentError(f"Invalid cache TTL: {ttl!r}")
    return float(ttl)


class CacheLRU(Generic[K, V]):
    """
    LRU cache with an optional time-to-live.

    When the cache exceeds max_size, the least recently used entries are
    evicted. Entries older than ttl seconds are treated as missing. A
    max_size of 0 disables caching.

    Thread-safe. get_or_load() runs at most one loader per key at a time, so
    concurrent misses for the same key wait for the first load instead of
    repeating it.

    Example:
        cache = CacheLRU(max_size=100, ttl=60)
        keys = cache.get_or_load(("admin:true",), lambda: directory.search(...))
    """

    def __init__(
        self,
        max_size: int = DEFAULT_CACHE_MAX_SIZE,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ) -> None:
        self._max_size = _check_max_size(max_size)
        self._ttl = _check_ttl(ttl)
        self._clock = clock
        self._name = name
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._inflight: Dict[K, threading.Lock] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    @property
    def max_size(self) -> int:
        """Maximum number of entries."""
        return self._max_size

    @max_size.setter
    def max_size(self, value: int) -> None:
        with self._lock:
            self._max_size = _check_max_size(value)
            self._evict_if_needed()

    @property
    def ttl(self) -> Optional[float]:
        """Entry lifetime in seconds, None for no expiry."""
        return self._ttl

    @ttl.setter
    def ttl(self, value: Optional[float]) -> None:
        with self._lock:
            self._ttl = _check_ttl(value)

    def _expired(self, entry: CacheEntry[V]) -> bool:
        return self._ttl is not None and self._clock() - entry.stored_at >= self._ttl

    def _lookup(self, key: K) -> Optional[CacheEntry[V]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry):
            del self._entries[key]
            logger.debug("%s: entry expired", self._name)
            return None
        self._entries.move_to_end(key)
        return entry

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Get a fresh entry and mark it as recently used."""
        with self._lock:
            entry = self._lookup(key)
            return default if entry is None else entry.value

    def set(self, key: K, value: V) -> None:
        """Store an entry, evicting the oldest ones if over max_size."""
        with self._lock:
            if self._max_size == 0:
                return
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock())
            self._entries.move_to_end(key)
            self._evict_if_needed()

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def get_or_load(self, key: K, loader: Callable[[], V]) -> V:
        """
        Return the cached value for key, calling loader on a miss.

        Loader exceptions propagate and nothing is cached.
        """
        with self._lock:
            entry = self._lookup(key)
            if entry is not None:
                logger.debug("%s: hit", self._name)
                self._hits += 1
                return entry.value
            key_lock = self._inflight.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                entry = self._lookup(key)
                if entry is not None:
                    logger.debug("%s: hit after waiting for a concurrent load", self._name)
                    self._hits += 1
                    return entry.value
                self._misses += 1
            logger.debug("%s: miss", self._name)
            try:
                value = loader()
                self.set(key, value)
            finally:
                with self._lock:
                    if self._inflight.get(key) is key_lock:
                        del self._inflight[key]
            return value

    def clear(self) -> None:
        """Clear all entries."""
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[call-overload]
            return entry is not None and not self._expired(entry)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_if_needed(self) -> None:
        """Evict oldest entries if over max size."""
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)
            logger.debug("%s: evicted least recently used entry", self._name)

    def stats(self) -> Dict[str, Any]:
        """Return cache statistics."""
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self._max_size,
                "ttl": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
            }


class RecipientCache:
    """
    Per-category caches of resolved recipient key sets.

    Create one and pass it to every KeyResolver that should share results.
    clear() and set_capacity() let callers trade staleness for directory
    load, or reset state between tests.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_CACHE_MAX_SIZE,
        ttl: Optional[float] = None,
        categories: Iterable[str] = CATEGORIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._caches: Dict[str, CacheLRU[Hashable, Any]] = {
            category: CacheLRU(max_size=max_size, ttl=ttl, clock=clock, name=category)
            for category in categories
        }

    @classmethod
    def from_env(cls, prefix: str = "ENCRYPTED_ATTRIBUTES_") -> RecipientCache:
        """
        Build from <prefix>CACHE_SIZE and <prefix>CACHE_TTL (seconds).

        Variables may also come from a .env file.
        """
        load_dotenv(find_dotenv(usecwd=True))
        size = os.environ.get(f"{prefix}CACHE_SIZE")
        ttl = os.environ.get(f"{prefix}CACHE_TTL")
        try:
            return cls(
                max_size=int(size) if size else DEFAULT_CACHE_MAX_SIZE,
                ttl=float(ttl) if ttl else None,
            )
        except (ValueError, ArgumentError) as e:
            raise ConfigError(f"Invalid cache configuration: {e}")

    def category(self, category: str) -> CacheLRU[Hashable, Any]:
        try:
            return self._caches[category]
        except KeyError:
            raise ArgumentError(f"Unknown cache category: {category!r}")

    @property
    def categories(self) -> tuple[str, ...]:
        return tuple(self._caches)

    def resolve(self, category: str, query: Hashable, loader: Callable[[], V]) -> V:
        """Return the cached result for (category, query), loading it on a miss."""
        return self.category(category).get_or_load(query, loader)

    def clear(self, category: Optional[str] = None) -> None:
        """Clear one category, or all of them."""
        if category is None:
            for cache in self._caches.values():
                cache.clear()
        else:
            self.category(category).clear()

    def set_capacity(self, category: str, max_size: int) -> None:
        """Resize a category. 0 disables caching for it."""
        self.category(category).max_size = max_size

    def set_ttl(self, category: str, ttl: Optional[float]) -> None:
        self.category(category).ttl = ttl

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {category: cache.stats() for category, cache in self._caches.items()}
