# =============================================================================
# lms_core/cache/ttl_cache.py
# In-memory TTL + LRU cache for remote responses
# =============================================================================
"""
TTLCache - Process-local key/value cache with per-entry expiry and a bounded
entry count.

Features:
- Per-entry time-to-live
- Least-recently-accessed eviction when full (10% of entries, at least one)
- Prefix invalidation for whole categories of cached responses
- Thread-safe: every operation runs under one lock
- Never raises; misses, expiry and type mismatches all read as None
"""

from __future__ import annotations
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Type, TypeVar
import logging

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """A cached value with its expiry and last access instants (clock seconds)."""
    value: V
    expires_at: float
    last_accessed: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


class TTLCache(Generic[V]):
    """
    Bounded in-memory cache with time-to-live entries.

    Usage:
        cache: TTLCache[list] = TTLCache(max_entries=100, default_ttl=300)
        cache.set("courses:all", rows)
        rows = cache.get("courses:all")
        cache.invalidate_by_prefix("courses:")
    """

    DEFAULT_MAX_ENTRIES = 200
    DEFAULT_TTL = 300.0            # Seconds
    EVICTION_FRACTION = 0.1

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_entries: Entry count at which set() starts evicting
            default_ttl: Lifetime in seconds when set() gets no ttl
            clock: Monotonic time source in seconds
        """
        self.max_entries = max(1, int(max_entries))
        self.default_ttl = float(default_ttl)
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._lock = threading.RLock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "expirations": 0}

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    def get(self, key: str, expected_type: Optional[Type] = None) -> Optional[V]:
        """
        Return the cached value for key, or None when absent or expired.

        Args:
            key: Cache key
            expected_type: If given, a value of another type reads as None
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None

            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                return None

            if expected_type is not None and not isinstance(entry.value, expected_type):
                self._stats["misses"] += 1
                return None

            entry.last_accessed = now
            self._stats["hits"] += 1
            return entry.value

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        """
        Insert or overwrite an entry.

        Args:
            key: Cache key
            value: Value to store
            ttl: Lifetime in seconds (default_ttl if None)
        """
        lifetime = self.default_ttl if ttl is None else float(ttl)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._make_room()

            now = self._clock()
            self._entries[key] = CacheEntry(
                value=value,
                expires_at=now + lifetime,
                last_accessed=now,
            )

    def get_or_load(
        self,
        key: str,
        loader: Callable[[], V],
        ttl: Optional[float] = None,
    ) -> V:
        """
        Return the cached value, or call loader and cache its result.

        The loader runs outside the lock; exceptions from it propagate and
        nothing is cached. A None result is returned but not cached.
        """
        value = self.get(key)
        if value is not None:
            return value

        value = loader()
        if value is not None:
            self.set(key, value, ttl)
        return value

    # =========================================================================
    # INVALIDATION / EVICTION
    # =========================================================================

    def invalidate(self, key: str) -> None:
        """Remove a single entry; no-op if absent."""
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_by_prefix(self, prefix: str) -> int:
        """
        Remove every entry whose key starts with prefix.

        Returns:
            Number of entries removed
        """
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]

        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries with prefix '{prefix}'")
        return len(doomed)

    def invalidate_all(self) -> None:
        """Empty the cache."""
        with self._lock:
            self._entries.clear()

    def evict_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._stats["expirations"] += len(expired)
            return len(expired)

    def _make_room(self) -> None:
        """Sweep expired entries, then evict the least recently accessed 10%."""
        self.evict_expired()
        if len(self._entries) < self.max_entries:
            return

        n_evict = max(1, int(len(self._entries) * self.EVICTION_FRACTION))
        by_age = sorted(self._entries.items(), key=lambda item: item[1].last_accessed)
        for key, _ in by_age[:n_evict]:
            del self._entries[key]

        self._stats["evictions"] += n_evict
        logger.debug(f"Cache full; evicted {n_evict} least recently used entries")

    # =========================================================================
    # DIAGNOSTICS
    # =========================================================================

    @property
    def count(self) -> int:
        """Number of stored entries (expired ones included until swept)."""
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.count

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "default_ttl": self.default_ttl,
                **self._stats,
            }


# Singleton accessor
_response_cache: Optional[TTLCache] = None
_response_cache_lock = threading.Lock()


def get_response_cache() -> TTLCache:
    """Get the global TTLCache used for remote responses."""
    global _response_cache
    if _response_cache is None:
        with _response_cache_lock:
            if _response_cache is None:
                from lms_core.settings import get_settings
                settings = get_settings()
                _response_cache = TTLCache(
                    max_entries=settings.cache_max_entries,
                    default_ttl=settings.cache_default_ttl,
                )
    return _response_cache
