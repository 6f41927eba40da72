"""List/detail caching for one entity type.

Collections are cached per owner and canonical query with a short TTL;
single entities are cached by id with a longer TTL. Mutations evict the
entity's detail key and a fixed set of common list queries. Lists cached
under other query shapes are not evicted and may be stale for up to the
list TTL (``staleness_bound_ms``), unless ``track_list_keys`` is on.
"""

import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

import structlog

from readthrough.config.settings import settings

from .decorators import OwnerOf, delete_keys, read_through
from .keys import KeyTemplate
from .manager import CacheManager, get_cache_manager
from .store import Clock

logger = structlog.get_logger()

# Unfiltered listing and its first page
DEFAULT_COMMON_QUERIES: tuple[Mapping[str, Any], ...] = ({}, {"page": 1})


class EntityCache:
    """Cache-aside helper for services that cache by hand."""

    def __init__(
        self,
        name: str,
        manager: Optional[CacheManager] = None,
        list_ttl_ms: Optional[int] = None,
        detail_ttl_ms: Optional[int] = None,
        common_queries: Sequence[Mapping[str, Any]] = DEFAULT_COMMON_QUERIES,
        track_list_keys: Optional[bool] = None,
        clock: Clock = time.time,
    ):
        self.name = name
        self._clock = clock
        self._manager = manager
        self.list_ttl_ms = list_ttl_ms if list_ttl_ms is not None else settings.cache_ttl_list_ms
        self.detail_ttl_ms = (
            detail_ttl_ms if detail_ttl_ms is not None else settings.cache_ttl_detail_ms
        )
        self.common_queries = tuple(common_queries)
        self.track_list_keys = (
            track_list_keys if track_list_keys is not None else settings.cache_track_owner_keys
        )

        self.list_template = KeyTemplate(f"{name}:list:{{owner_id}}:{{query}}")
        self.detail_template = KeyTemplate(f"{name}:detail:{{entity_id}}")

        # owner id -> {list key: expires_at} populated by this process
        self._owner_keys: defaultdict[str, dict[str, float]] = defaultdict(dict)

    @property
    def manager(self) -> CacheManager:
        return self._manager or get_cache_manager()

    @property
    def staleness_bound_ms(self) -> Optional[int]:
        """Longest time a list result may stay stale after a mutation.

        None when every populated list key is tracked and evicted.
        """
        return None if self.track_list_keys else self.list_ttl_ms

    def list_key(self, owner_id: str, query: Optional[Mapping[str, Any]] = None) -> str:
        return self.list_template.resolve({"owner_id": owner_id, "query": query or {}})

    def detail_key(self, entity_id: str) -> str:
        return self.detail_template.resolve({"entity_id": entity_id})

    def tracked_list_keys(self, owner_id: str) -> set[str]:
        """List keys tracked for ``owner_id`` whose entries may still be live."""
        now = self._clock()
        keys = self._owner_keys.get(str(owner_id), {})
        return {key for key, expires_at in keys.items() if now < expires_at}

    def _track(self, owner_id: str, key: str) -> None:
        # Entries past their TTL are gone from the store; forget their keys
        now = self._clock()
        keys = self._owner_keys[owner_id]
        for expired in [k for k, expires_at in keys.items() if now >= expires_at]:
            del keys[expired]
        keys[key] = now + self.list_ttl_ms / 1000

    async def get_list(
        self,
        owner_id: str,
        query: Optional[Mapping[str, Any]],
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Read an owner's collection through the cache."""
        key = self.list_key(owner_id, query)
        if not settings.cache_enabled:
            return await loader()

        if self.track_list_keys:
            self._track(str(owner_id), key)
        return await read_through(self.manager, key, self.list_ttl_ms, loader)

    async def get_detail(
        self,
        entity_id: str,
        loader: Callable[[], Awaitable[Any]],
        owner_of: Optional[OwnerOf] = None,
        principal_id: Optional[str] = None,
    ) -> Any:
        """Read one entity through the cache, re-checking ownership on hits."""
        if not settings.cache_enabled:
            return await loader()

        return await read_through(
            self.manager,
            self.detail_key(entity_id),
            self.detail_ttl_ms,
            loader,
            owner_of=owner_of,
            principal_id=principal_id,
        )

    async def invalidate(self, owner_id: str, entity_id: Optional[str] = None) -> list[str]:
        """Evict after a create, update or delete by ``owner_id``.

        Returns:
            The keys that were deleted
        """
        list_keys = {self.list_key(owner_id, query) for query in self.common_queries}
        if self.track_list_keys:
            list_keys |= set(self._owner_keys.pop(str(owner_id), {}))

        keys = [self.detail_key(entity_id)] if entity_id is not None else []
        keys.extend(sorted(list_keys))

        evicted = await delete_keys(self.manager, keys)
        logger.debug(
            "entity_cache_invalidated",
            entity=self.name,
            owner_id=owner_id,
            entity_id=entity_id,
            evicted=len(evicted),
            staleness_bound_ms=self.staleness_bound_ms,
        )
        return evicted
