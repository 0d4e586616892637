"""
Cache & De-duplication Layer.

Two mechanisms composed by CachedLoader:

1. TTLCache - entries keyed by a normalized request signature; a read past
   expiry is a miss and the entry is dropped.
2. In-flight de-duplication - concurrent callers with the same signature
   await one shared task. The map entry is removed once the task settles,
   whatever the outcome, so a failure is never replayed to later callers.

All state is owned by the event loop thread. Check-and-insert on the
in-flight map happens without an await in between, which makes it atomic
with respect to other coroutines.
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default TTLs per query shape (seconds)
PAIR_PRICE_TTL = 15.0
LISTING_TTL = 30.0
PAIR_LISTING_TTL = 30.0
TICKER_SNAPSHOT_TTL = 30.0
METADATA_TTL = 600.0

_MISSING = object()


def request_signature(shape: str, **params: Any) -> str:
    """
    Stable cache key for a request.
    
    Parameter order does not matter, list values are sorted, strings are
    trimmed, and None values are dropped, so equivalent requests share a key.
    
    Example:
        request_signature("tokens", chains=[56, 1], q=" eth ", limit=10)
        # -> "tokens|chains=1,56|limit=10|q=eth"
    """
    parts = [shape]
    for name in sorted(params):
        value = params[name]
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            rendered = ",".join(sorted(str(_scalar(v)) for v in value))
        else:
            rendered = str(_scalar(value))
        parts.append(f"{name}={rendered}")
    return "|".join(parts)


def _scalar(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, str):
        return value.strip()
    return value


@dataclass
class CacheEntry(Generic[T]):
    """Cached value with absolute expiry."""
    data: T
    created_at: float
    expires_at: float
    hits: int = 0
    
    def is_expired(self, now: float) -> bool:
        """Check if cache entry is expired."""
        return now >= self.expires_at
    
    def age_seconds(self, now: float) -> float:
        """Get age of cache entry in seconds."""
        return now - self.created_at


class TTLCache(Generic[T]):
    """
    In-memory TTL cache.
    
    Args:
        default_ttl: TTL used when set() is called without one
        max_entries: size bound; expired entries go first, then the
            entries closest to expiry
        clock: monotonic time source, injectable for tests
    """
    
    def __init__(
        self,
        default_ttl: float = LISTING_TTL,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ) -> None:
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._clock = clock
        self._name = name
        self._entries: dict[str, CacheEntry[T]] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
    
    def get(self, key: str, default: Any = None) -> Any:
        """Value for key, or default when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return default
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._misses += 1
            return default
        entry.hits += 1
        self._hits += 1
        return entry.data
    
    def set(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        """Store value; expiry is fixed at write time to now + ttl."""
        now = self._clock()
        ttl = self._default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(data=value, created_at=now, expires_at=now + ttl)
        if len(self._entries) > self._max_entries:
            self._evict()
    
    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None
    
    def clear(self) -> None:
        """Clear all cached data."""
        self._entries.clear()
        logger.info(f"[{self._name}] Cache cleared")
    
    def cleanup(self) -> int:
        """Drop expired entries, returning how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"[{self._name}] Cleaned {len(expired)} expired entries")
        return len(expired)
    
    def _evict(self) -> None:
        self.cleanup()
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        by_expiry = sorted(self._entries.items(), key=lambda item: item[1].expires_at)
        for key, _ in by_expiry[:overflow]:
            del self._entries[key]
        self._evictions += overflow
    
    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and not entry.is_expired(self._clock())
    
    def __len__(self) -> int:
        return len(self._entries)
    
    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        total_requests = self._hits + self._misses
        hit_rate = (self._hits / total_requests * 100) if total_requests > 0 else 0
        
        return {
            "name": self._name,
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate_percent": round(hit_rate, 2),
        }


@dataclass
class _InFlight:
    task: asyncio.Future
    waiters: int = 0


class CachedLoader:
    """
    TTL cache plus in-flight request coalescing.
    
    Example:
        loader = CachedLoader(TTLCache())
        tokens = await loader.get_or_load(key, lambda: fetch_tokens(...), ttl=30)
    
    Only successful results are cached. A caller that is cancelled stops
    waiting without cancelling the shared computation, unless it was the
    last caller waiting on it.
    """
    
    def __init__(self, cache: Optional[TTLCache] = None, name: str = "loader") -> None:
        self._cache = cache if cache is not None else TTLCache(name=name)
        self._name = name
        self._inflight: dict[str, _InFlight] = {}
        self._loads = 0
        self._coalesced = 0
    
    @property
    def cache(self) -> TTLCache:
        return self._cache
    
    def inflight_count(self) -> int:
        return len(self._inflight)
    
    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
    ) -> T:
        """Cached value for key, computing it at most once at a time."""
        cached = self._cache.get(key, _MISSING)
        if cached is not _MISSING:
            return cached
        
        entry = self._inflight.get(key)
        if entry is None or entry.task.done():
            entry = _InFlight(asyncio.ensure_future(self._run(key, loader, ttl)))
            self._inflight[key] = entry
            entry.task.add_done_callback(functools.partial(self._settle, key, entry))
            self._loads += 1
        else:
            self._coalesced += 1
            logger.debug(f"[{self._name}] Joined in-flight computation for {key}")
        
        entry.waiters += 1
        try:
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            if entry.waiters <= 1 and not entry.task.done():
                entry.task.cancel()
            raise
        finally:
            entry.waiters -= 1
    
    async def _run(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        ttl: Optional[float],
    ) -> T:
        value = await loader()
        self._cache.set(key, value, ttl)
        return value
    
    def _settle(self, key: str, entry: _InFlight, task: asyncio.Future) -> None:
        if self._inflight.get(key) is entry:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"[{self._name}] Computation for {key} failed: {task.exception()}")
    
    def get_stats(self) -> dict[str, Any]:
        """Loader and cache statistics."""
        stats = self._cache.get_stats()
        stats.update({
            "loads": self._loads,
            "coalesced": self._coalesced,
            "inflight": len(self._inflight),
        })
        return stats
