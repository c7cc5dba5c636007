"""Response Caching Layer.

Public API:
    CacheBackend          - Abstract base for all backends
    RedisCacheBackend     - Redis-backed production cache
    InMemoryCacheBackend  - LRU-bounded dict cache with lazy expiry
    get_cache_backend     - Factory: selects backend from settings

    CacheEntry            - Immutable (fingerprint, response, expiry) record
    ResponseCache         - Fingerprint-keyed AI response cache
"""

from ai_orchestrator.cache.backend import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    get_cache_backend,
)
from ai_orchestrator.cache.response_cache import CacheEntry, ResponseCache

__all__ = [
    "CacheBackend",
    "RedisCacheBackend",
    "InMemoryCacheBackend",
    "get_cache_backend",
    "CacheEntry",
    "ResponseCache",
]
