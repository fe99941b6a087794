"""
Cache Module

In-memory, process-lifetime stores consulted before a request reaches
the transport:

- ResponseCache: fingerprint-addressed LRU + TTL store
- PreloadStore: caller-keyed, read-once prefetched responses
"""

from .preload import PreloadEntry, PreloadStore
from .response_cache import CacheBackend, CacheEntry, CacheStats, ResponseCache

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "CacheStats",
    "PreloadEntry",
    "PreloadStore",
    "ResponseCache",
]
