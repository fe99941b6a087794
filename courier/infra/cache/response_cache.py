"""
Response Cache — Bounded LRU with Lazy TTL
============================================

In-memory response store addressed by request fingerprint.

Design:
  - OrderedDict gives O(1) LRU: hits move to the end, eviction pops the front
  - TTL is checked lazily on read; an expired entry is purged and reported
    as a miss, so the store never returns stale data
  - No awaits between check and mutation, so operations are atomic with
    respect to the event loop
  - Async interface matches ``CacheBackend`` so other stores can be plugged
    into the dispatcher
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from courier.infra.telemetry import get_logger, get_metrics
from courier.models.response import Response

logger = get_logger(__name__)
metrics = get_metrics()

class CacheBackend(Protocol):
    """Protocol implemented by cache stores used by the dispatcher."""

    async def get(self, key: str) -> Response | None: ...

    async def set(self, key: str, response: Response, ttl_s: float | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...

@dataclass(frozen=True, slots=True)
class CacheEntry:
    """One cached response with its expiry instant (clock seconds)."""

    response: Response
    expires_at: float

@dataclass
class CacheStats:
    """Cache counters."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

class ResponseCache:
    """
    LRU + TTL response store.

    Usage:
        cache = ResponseCache(max_size=100, default_ttl_s=300)
        await cache.set(key, response)
        cached = await cache.get(key)  # None once expired
    """

    def __init__(
        self,
        *,
        max_size: int = 100,
        default_ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._default_ttl_s = default_ttl_s
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._stats = CacheStats()

    async def get(self, key: str) -> Response | None:
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            metrics.record_cache_access(store="response", hit=False)
            return None

        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._stats.misses += 1
            self._stats.expirations += 1
            metrics.record_cache_access(store="response", hit=False)
            metrics.record_cache_eviction(store="response", reason="expired")
            logger.debug("cache_entry_expired", key=key)
            return None

        self._entries.move_to_end(key)
        self._stats.hits += 1
        metrics.record_cache_access(store="response", hit=True)
        return entry.response

    async def set(self, key: str, response: Response, ttl_s: float | None = None) -> None:
        ttl = ttl_s if ttl_s is not None else self._default_ttl_s
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self._max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            metrics.record_cache_eviction(store="response", reason="lru")
            logger.debug("cache_evicted", key=evicted)
        self._entries[key] = CacheEntry(response=response, expires_at=self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()
        logger.info("cache_cleared")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.expires_at > self._clock()

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self._max_size,
            "default_ttl_s": self._default_ttl_s,
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "evictions": self._stats.evictions,
            "expirations": self._stats.expirations,
            "hit_rate": round(self._stats.hit_rate, 3),
        }
