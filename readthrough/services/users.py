"""User service with declarative caching."""

from typing import Any, Mapping, Optional, Protocol

from readthrough.cache.decorators import cache_evict, cacheable
from readthrough.config.settings import settings
from readthrough.context import get_principal_id
from readthrough.errors import NotFoundError

PREFERENCES_TTL_MS = 600_000  # 10 minutes


class UserRepository(Protocol):
    """Persistence for users (provided by the application)."""

    async def find_all(self) -> list[dict]: ...

    async def find_by_id(self, user_id: str) -> Optional[dict]: ...

    async def create(self, data: Mapping[str, Any]) -> dict: ...

    async def update(self, user_id: str, data: Mapping[str, Any]) -> dict: ...

    async def delete(self, user_id: str) -> None: ...


class UserService:
    """User profile and preference operations."""

    def __init__(self, repository: UserRepository):
        self.repository = repository

    @cacheable("users:list", ttl_ms=settings.cache_ttl_list_ms)
    async def list_users(self) -> list[dict]:
        return await self.repository.find_all()

    @cacheable("user_profile:{user_id}", ttl_ms=settings.cache_ttl_detail_ms)
    async def get_user(self, user_id: str) -> dict:
        return await self._require(user_id)

    @cacheable(
        "user_preferences:{user_id}",
        ttl_ms=PREFERENCES_TTL_MS,
        owner_of=lambda prefs: prefs["user_id"],
    )
    async def get_preferences(self, user_id: str) -> dict:
        """Preferences are private: only the user may read them."""
        if get_principal_id() != user_id:
            raise NotFoundError("User", user_id)
        user = await self._require(user_id)
        return {"user_id": user["id"], "preferences": user.get("preferences") or {}}

    @cache_evict("users:list")
    async def create_user(self, data: Mapping[str, Any]) -> dict:
        return await self.repository.create(data)

    @cache_evict("user_profile:{user_id}", "users:list")
    async def update_user(self, user_id: str, data: Mapping[str, Any]) -> dict:
        await self._require(user_id)
        return await self.repository.update(user_id, data)

    @cache_evict("user_profile:{user_id}", "users:list")
    async def delete_user(self, user_id: str) -> None:
        await self._require(user_id)
        await self.repository.delete(user_id)

    @cache_evict("user_profile:{user_id}", "user_preferences:{user_id}")
    async def update_preferences(self, user_id: str, preferences: Mapping[str, Any]) -> dict:
        await self._require(user_id)
        preferences = {
            "dietary_restrictions": list(preferences.get("dietary_restrictions") or []),
            "allergies": list(preferences.get("allergies") or []),
            "preferred_categories": list(preferences.get("preferred_categories") or []),
        }
        return await self.repository.update(user_id, {"preferences": preferences})

    async def _require(self, user_id: str) -> dict:
        user = await self.repository.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user
