"""Shopping list service with hand-placed list/detail caching.

Lists are cached per user and query for the short list TTL, single lists by
id for the longer detail TTL. Every mutation evicts the list's detail key and
the user's common list queries after the repository call returns.
"""

from typing import Any, Mapping, Optional, Protocol

import structlog

from readthrough.cache.entity import EntityCache
from readthrough.errors import NotFoundError

logger = structlog.get_logger()

ENTITY = "Shopping list"


class ShoppingListRepository(Protocol):
    """Persistence for shopping lists (provided by the application)."""

    async def find_many(self, user_id: str, query: Mapping[str, Any]) -> list[dict]: ...

    async def find_by_id(self, list_id: str) -> Optional[dict]: ...

    async def create(self, user_id: str, data: Mapping[str, Any]) -> dict: ...

    async def update(self, list_id: str, data: Mapping[str, Any]) -> dict: ...

    async def delete(self, list_id: str) -> None: ...


def _owner_of(shopping_list: Mapping[str, Any]) -> Any:
    return shopping_list["user_id"]


class ShoppingListService:
    """Shopping list reads and writes for one repository."""

    def __init__(self, repository: ShoppingListRepository, cache: Optional[EntityCache] = None):
        self.repository = repository
        self.cache = cache or EntityCache("shopping_lists")

    async def list_lists(
        self,
        user_id: str,
        query: Optional[Mapping[str, Any]] = None,
    ) -> list[dict]:
        """List a user's shopping lists matching ``query`` (filters, paging)."""
        query = dict(query or {})
        return await self.cache.get_list(
            user_id, query, lambda: self.repository.find_many(user_id, query)
        )

    async def get_list(self, user_id: str, list_id: str) -> dict:
        """Get one of the user's lists.

        Raises:
            NotFoundError: if the list does not exist or belongs to someone else,
                whether or not it was cached
        """
        return await self.cache.get_detail(
            list_id,
            lambda: self._load_owned(user_id, list_id),
            owner_of=_owner_of,
            principal_id=user_id,
        )

    async def create_list(self, user_id: str, data: Mapping[str, Any]) -> dict:
        created = await self.repository.create(user_id, data)
        await self.cache.invalidate(user_id, created["id"])
        logger.info("shopping_list_created", list_id=created["id"], user_id=user_id)
        return created

    async def update_list(self, user_id: str, list_id: str, data: Mapping[str, Any]) -> dict:
        await self._load_owned(user_id, list_id)
        updated = await self.repository.update(list_id, data)
        await self.cache.invalidate(user_id, list_id)
        return updated

    async def delete_list(self, user_id: str, list_id: str) -> None:
        await self._load_owned(user_id, list_id)
        await self.repository.delete(list_id)
        await self.cache.invalidate(user_id, list_id)
        logger.info("shopping_list_deleted", list_id=list_id, user_id=user_id)

    async def _load_owned(self, user_id: str, list_id: str) -> dict:
        shopping_list = await self.repository.find_by_id(list_id)
        if shopping_list is None or str(_owner_of(shopping_list)) != str(user_id):
            raise NotFoundError(ENTITY, list_id)
        return shopping_list
