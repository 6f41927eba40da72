"""Pytest configuration and fixtures for the caching layer."""

from typing import Any, Mapping, Optional

import pytest

from readthrough.cache.decorators import clear_cache_hit_status
from readthrough.cache.manager import CacheManager, reset_cache_manager, set_cache_manager
from readthrough.cache.store import MemoryStore, SqliteStore
from readthrough.context import clear_request_context

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: int) -> None:
        self.now += ms / 1000


class FlakyStore(MemoryStore):
    """Memory store whose operations can be made to fail."""

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.fail_get = False
        self.fail_set = False
        self.fail_delete_keys: set[str] = set()
        self.deleted: list[str] = []

    async def get_entry(self, key):
        if self.fail_get:
            raise ConnectionError("store unreachable")
        return await super().get_entry(key)

    async def put_entry(self, entry):
        if self.fail_set:
            raise TimeoutError("store timed out")
        await super().put_entry(entry)

    async def delete(self, key):
        if key in self.fail_delete_keys:
            raise ConnectionError(f"cannot delete {key}")
        self.deleted.append(key)
        await super().delete(key)


class InMemoryShoppingListRepository:
    """Shopping list persistence with call counting."""

    def __init__(self):
        self.lists: dict[str, dict] = {}
        self.calls: dict[str, int] = {"find_many": 0, "find_by_id": 0}
        self._next_id = 1

    async def find_many(self, user_id: str, query: Mapping[str, Any]) -> list[dict]:
        self.calls["find_many"] += 1
        status = query.get("status")
        return [
            dict(item)
            for item in self.lists.values()
            if item["user_id"] == user_id and (status is None or item["status"] == status)
        ]

    async def find_by_id(self, list_id: str) -> Optional[dict]:
        self.calls["find_by_id"] += 1
        item = self.lists.get(list_id)
        return dict(item) if item else None

    async def create(self, user_id: str, data: Mapping[str, Any]) -> dict:
        list_id = f"list-{self._next_id}"
        self._next_id += 1
        self.lists[list_id] = {
            "id": list_id,
            "user_id": user_id,
            "title": data["title"],
            "status": data.get("status", "active"),
        }
        return dict(self.lists[list_id])

    async def update(self, list_id: str, data: Mapping[str, Any]) -> dict:
        self.lists[list_id].update(data)
        return dict(self.lists[list_id])

    async def delete(self, list_id: str) -> None:
        del self.lists[list_id]


class InMemoryUserRepository:
    """User persistence with call counting."""

    def __init__(self, users: Optional[list[dict]] = None):
        self.users = {u["id"]: dict(u) for u in users or []}
        self.calls: dict[str, int] = {"find_all": 0, "find_by_id": 0}

    async def find_all(self) -> list[dict]:
        self.calls["find_all"] += 1
        return [dict(u) for u in self.users.values()]

    async def find_by_id(self, user_id: str) -> Optional[dict]:
        self.calls["find_by_id"] += 1
        user = self.users.get(user_id)
        return dict(user) if user else None

    async def create(self, data: Mapping[str, Any]) -> dict:
        user = {"id": data["id"], "name": data["name"], "preferences": {}}
        self.users[user["id"]] = user
        return dict(user)

    async def update(self, user_id: str, data: Mapping[str, Any]) -> dict:
        self.users[user_id].update(data)
        return dict(self.users[user_id])

    async def delete(self, user_id: str) -> None:
        del self.users[user_id]


@pytest.fixture(autouse=True)
def clean_context():
    """Reset per-request context and the global manager around each test."""
    clear_cache_hit_status()
    clear_request_context()
    reset_cache_manager()
    yield
    clear_request_context()
    reset_cache_manager()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(max_items=100, clock=clock)


@pytest.fixture
def sqlite_store(tmp_path, clock: FakeClock) -> SqliteStore:
    return SqliteStore(db_path=tmp_path / "test_cache.db", clock=clock)


@pytest.fixture
def flaky_store(clock: FakeClock) -> FlakyStore:
    return FlakyStore(max_items=100, clock=clock)


@pytest.fixture
def cache_manager(memory_store: MemoryStore) -> CacheManager:
    """Provide a fresh cache manager for each test."""
    return CacheManager(store=memory_store)


@pytest.fixture
def global_cache_manager(cache_manager: CacheManager):
    """Install the test manager as the global one."""
    set_cache_manager(cache_manager)
    yield cache_manager
    reset_cache_manager()


@pytest.fixture
def shopping_list_repository() -> InMemoryShoppingListRepository:
    return InMemoryShoppingListRepository()


@pytest.fixture
def user_repository() -> InMemoryUserRepository:
    return InMemoryUserRepository(
        users=[
            {"id": "u1", "name": "Dana", "preferences": {"allergies": ["nuts"]}},
            {"id": "u2", "name": "Omer", "preferences": {}},
        ]
    )
