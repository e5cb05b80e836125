"""
Query cache with pluggable storage.
"""

from .backends import CacheBackend, CacheEntry, LocalCacheBackend, RedisCacheBackend
from .query_cache import QueryCache

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "LocalCacheBackend",
    "QueryCache",
    "RedisCacheBackend",
]
