"""Cache module: read-through wrappers, eviction and exact-key stores."""

from .decorators import (
    cache_evict,
    cacheable,
    clear_cache_hit_status,
    get_cache_hit_status,
)
from .entity import EntityCache
from .invalidation import InvalidationOperation, InvalidationRegistry, InvalidationStrategy
from .keys import KeyTemplate, canonicalize, resolve
from .manager import (
    CacheManager,
    CacheStats,
    get_cache_manager,
    reset_cache_manager,
    set_cache_manager,
)
from .store import CacheEntry, CacheStore, MemoryStore, SqliteStore, TieredStore

__all__ = [
    "cacheable",
    "cache_evict",
    "get_cache_hit_status",
    "clear_cache_hit_status",
    "EntityCache",
    "InvalidationOperation",
    "InvalidationRegistry",
    "InvalidationStrategy",
    "KeyTemplate",
    "canonicalize",
    "resolve",
    "CacheManager",
    "CacheStats",
    "get_cache_manager",
    "reset_cache_manager",
    "set_cache_manager",
    "CacheEntry",
    "CacheStore",
    "MemoryStore",
    "SqliteStore",
    "TieredStore",
]
