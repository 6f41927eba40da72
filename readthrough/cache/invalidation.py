"""Named invalidation strategies for mutations.

A strategy maps an operation name such as ``"food:update"`` to the entity
key pattern and the fixed dependency keys the operation makes stale. The
store has no pattern delete, so wildcard keys are refused at registration.
"""

from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

import structlog
from pydantic import BaseModel

from readthrough.errors import KeyTemplateError

from .decorators import delete_keys
from .manager import CacheManager, get_cache_manager

logger = structlog.get_logger()

ENTITY_SUFFIXES = ("list", "count", "all")


def _reject_wildcards(keys: Iterable[str]) -> None:
    wildcards = [key for key in keys if "*" in key]
    if wildcards:
        raise KeyTemplateError(
            f"Wildcard keys cannot be evicted by exact-key stores: {', '.join(wildcards)}",
            details={"keys": wildcards},
        )


class InvalidationStrategy(BaseModel):
    """Keys to evict when an operation succeeds."""

    pattern: str
    dependencies: tuple[str, ...] = ()

    def keys_for(self, entity_id: Optional[str] = None) -> list[str]:
        keys = [f"{self.pattern}:{entity_id}"] if entity_id else []
        keys.extend(self.dependencies)
        return keys


class InvalidationOperation(BaseModel):
    """One entry of a bulk invalidation."""

    operation: str
    entity_id: Optional[str] = None
    additional_keys: tuple[str, ...] = ()


class InvalidationRegistry:
    """Registry of invalidation strategies keyed by operation name."""

    def __init__(self, manager: Optional[CacheManager] = None):
        self._manager = manager
        self._strategies: dict[str, InvalidationStrategy] = {}

    @property
    def manager(self) -> CacheManager:
        return self._manager or get_cache_manager()

    def register(
        self,
        operation: str,
        pattern: str,
        dependencies: Sequence[str] = (),
    ) -> "InvalidationRegistry":
        """Register the keys ``operation`` makes stale.

        Raises:
            KeyTemplateError: if any key contains a wildcard
        """
        _reject_wildcards([pattern, *dependencies])
        self._strategies[operation] = InvalidationStrategy(
            pattern=pattern, dependencies=dependencies
        )
        return self

    def get(self, operation: str) -> Optional[InvalidationStrategy]:
        return self._strategies.get(operation)

    async def invalidate(
        self,
        operation: str,
        entity_id: Optional[str] = None,
        additional_keys: Sequence[str] = (),
    ) -> list[str]:
        """Invalidate cache based on operation.

        Returns:
            The keys that were deleted
        """
        strategy = self._strategies.get(operation)
        if strategy is None:
            logger.warning("invalidation_strategy_missing", operation=operation)
            return []

        _reject_wildcards(additional_keys)
        keys = strategy.keys_for(entity_id) + list(additional_keys)
        evicted = await delete_keys(self.manager, keys)
        logger.debug("cache_invalidated", operation=operation, keys=evicted)
        return evicted

    async def invalidate_entity(
        self,
        entity_type: str,
        entity_id: Optional[str] = None,
    ) -> list[str]:
        """Invalidate an entity's id key and its well-known collection keys."""
        keys = [f"{entity_type}:{entity_id}"] if entity_id else []
        keys.extend(f"{entity_type}:{suffix}" for suffix in ENTITY_SUFFIXES)
        return await delete_keys(self.manager, keys)

    async def bulk_invalidate(self, operations: Iterable[InvalidationOperation]) -> list[str]:
        """Invalidate several operations, deleting each distinct key once."""
        keys: dict[str, None] = {}
        for op in operations:
            strategy = self._strategies.get(op.operation)
            if strategy is None:
                logger.warning("invalidation_strategy_missing", operation=op.operation)
                continue
            _reject_wildcards(op.additional_keys)
            for key in strategy.keys_for(op.entity_id) + list(op.additional_keys):
                keys.setdefault(key)

        evicted = await delete_keys(self.manager, keys)
        logger.debug("cache_bulk_invalidated", count=len(evicted))
        return evicted

    async def invalidate_if(
        self,
        condition: Callable[[], Awaitable[bool]],
        keys: Sequence[str],
    ) -> list[str]:
        """Delete ``keys`` only when ``condition`` holds."""
        _reject_wildcards(keys)
        if not await condition():
            return []
        return await delete_keys(self.manager, keys)

    def stats(self) -> dict[str, Any]:
        """Get invalidation statistics."""
        return {
            "strategies_count": len(self._strategies),
            "strategies": sorted(self._strategies),
        }
