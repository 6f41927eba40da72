"""Cache manager: the programmatic get/set/delete API over a store.

The manager absorbs store failures. A failed read is a miss and a failed
write or delete is a logged no-op, so a cache outage never fails a request.
"""

from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog
from pydantic import BaseModel

from readthrough.config.settings import Settings
from readthrough.logging import EventCategory, LogTimer, log_cache_operation

from .store import CacheStore, MemoryStore, SqliteStore, TieredStore, round_trip

logger = structlog.get_logger()

HEALTH_CHECK_KEY = "__cache_health_check__"


class CacheStats(BaseModel):
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0
    ownership_rejections: int = 0
    items: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate hit rate percentage."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0


class CacheManager:
    """Fail-open facade over a :class:`CacheStore`."""

    def __init__(self, store: CacheStore, default_ttl_ms: int = 300_000):
        self.store = store
        self.default_ttl_ms = default_ttl_ms
        self._stats = CacheStats()

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache.

        Args:
            key: Resolved cache key

        Returns:
            Cached value, or None on a miss, an expired entry or a store error
        """
        try:
            value = await self.store.get(key)
        except Exception as e:
            self._record_error("get", key, e)
            value = None

        if value is None:
            self._stats.misses += 1
            log_cache_operation("miss", key)
        else:
            self._stats.hits += 1
            log_cache_operation("hit", key, hit_rate=self._stats.hit_rate)
        return value

    async def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> bool:
        """Store value in cache.

        Args:
            key: Resolved cache key
            value: JSON-serializable value
            ttl_ms: Time to live in milliseconds (manager default if None)

        Returns:
            True if the value was stored
        """
        ttl = ttl_ms if ttl_ms is not None else self.default_ttl_ms
        try:
            await self.store.set(key, value, ttl)
        except Exception as e:
            self._record_error("set", key, e)
            return False

        self._stats.sets += 1
        log_cache_operation("set", key, ttl_ms=ttl)
        return True

    async def delete(self, key: str) -> bool:
        """Delete ``key``; absent keys are not an error.

        Returns:
            True unless the store failed
        """
        try:
            await self.store.delete(key)
        except Exception as e:
            self._record_error("delete", key, e)
            return False

        self._stats.deletes += 1
        log_cache_operation("deleted", key)
        return True

    async def delete_many(self, keys: Iterable[str]) -> list[str]:
        """Delete each key independently.

        Returns:
            Keys whose deletion failed
        """
        failed = []
        for key in keys:
            if not await self.delete(key):
                failed.append(key)
        return failed

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl_ms: Optional[int] = None,
    ) -> Any:
        """Return the cached value, or compute it with ``factory`` and cache it.

        None results are returned but never cached.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await factory()
        if value is None:
            return None
        return await self.store_loaded(key, value, ttl_ms)

    async def store_loaded(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> Any:
        """Cache a freshly loaded value and return it as later hits will see it.

        Hits decode JSON, so a model or datetime comes back as plain data; the
        loading call gets that same form. A value that cannot be serialized is
        returned unchanged and not cached.
        """
        try:
            value = round_trip(value)
        except TypeError as e:
            self._record_error("set", key, e)
            return value

        await self.set(key, value, ttl_ms)
        return value

    async def clear(self) -> int:
        """Clear all cache entries."""
        count = await self.store.clear()
        logger.info("cache_cleared", count=count)
        return count

    async def cleanup_expired(self) -> int:
        """Remove expired entries from the store."""
        with LogTimer("cache_cleanup_expired", category=EventCategory.CACHE) as timer:
            removed = await self.store.cleanup_expired()
            timer.extra_fields["removed"] = removed
        return removed

    def record_ownership_rejection(self, key: str) -> None:
        self._stats.ownership_rejections += 1
        logger.warning("cache_ownership_rejected", key=key[:80])

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        return self._stats.model_copy()

    async def get_stats_with_items(self) -> CacheStats:
        """Get cache statistics including the store's item count."""
        items = 0
        try:
            items = await self.store.count()
        except Exception as e:
            self._record_error("count", "*", e)

        stats = self.get_stats()
        stats.items = items
        return stats

    async def health_check(self) -> dict[str, Any]:
        """Probe the store with a set/get/delete round trip."""
        try:
            await self.store.set(HEALTH_CHECK_KEY, "ok", 1000)
            value = await self.store.get(HEALTH_CHECK_KEY)
            await self.store.delete(HEALTH_CHECK_KEY)
        except Exception as e:
            logger.error("cache_health_check_failed", error=str(e))
            return {"connected": False, "error": str(e)}
        return {"connected": value == "ok", "backend": type(self.store).__name__}

    async def is_available(self) -> bool:
        """Check if cache is available."""
        health = await self.health_check()
        return health["connected"]

    def _record_error(self, operation: str, key: str, error: Exception) -> None:
        self._stats.errors += 1
        logger.warning(
            "cache_store_error",
            operation=operation,
            key=key[:80],
            error=str(error),
            error_type=type(error).__name__,
        )


def create_store(config: Settings) -> CacheStore:
    """Build the store selected by ``config.cache_backend``."""
    if config.cache_backend == "memory":
        return MemoryStore(max_items=config.cache_memory_max_items)
    if config.cache_backend == "sqlite":
        return SqliteStore(db_path=config.cache_path)
    if config.cache_backend == "tiered":
        return TieredStore(
            memory=MemoryStore(max_items=config.cache_memory_max_items),
            persistent=SqliteStore(db_path=config.cache_path),
        )
    raise ValueError(f"Unknown cache backend: {config.cache_backend!r}")


# Global cache manager instance
_cache_manager: Optional[CacheManager] = None


def get_cache_manager() -> CacheManager:
    """Get the global cache manager instance.

    Returns:
        CacheManager instance (creates if needed)
    """
    global _cache_manager
    if _cache_manager is None:
        from readthrough.config.settings import settings

        _cache_manager = CacheManager(
            store=create_store(settings),
            default_ttl_ms=settings.cache_ttl_default_ms,
        )
    return _cache_manager


def set_cache_manager(manager: CacheManager) -> None:
    """Install ``manager`` as the global instance."""
    global _cache_manager
    _cache_manager = manager


def reset_cache_manager() -> None:
    """Reset the global cache manager (for testing)."""
    global _cache_manager
    _cache_manager = None
