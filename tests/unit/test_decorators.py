"""Tests for the cacheable and cache_evict decorators."""

import asyncio
from datetime import datetime
from unittest.mock import patch

import pytest
from pydantic import BaseModel

from readthrough.cache.decorators import (
    cache_evict,
    cacheable,
    clear_cache_hit_status,
    get_cache_hit_status,
)
from readthrough.cache.manager import CacheManager
from readthrough.context import get_principal_id, principal_scope, set_request_context
from readthrough.errors import KeyTemplateError, NotFoundError


class TestCacheHitStatus:
    """Tests for cache hit status tracking."""

    def test_initial_status_is_none(self):
        clear_cache_hit_status()
        assert get_cache_hit_status() is None

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache_manager):
        @cacheable("status:{x}", ttl_ms=60_000, manager=cache_manager)
        async def handler(x: int) -> int:
            return x * 2

        await handler(1)
        assert get_cache_hit_status() is False

        await handler(1)
        assert get_cache_hit_status() is True


class TestCacheable:
    """Tests for the read-through decorator."""

    @pytest.mark.asyncio
    async def test_hit_returns_cached_value_without_calling_handler(self, cache_manager):
        calls = []

        @cacheable("detail:{item_id}", ttl_ms=60_000, manager=cache_manager)
        async def get_item(item_id: str) -> dict:
            calls.append(item_id)
            return {"id": item_id, "version": len(calls)}

        first = await get_item("a")
        second = await get_item("a")

        assert first == second == {"id": "a", "version": 1}
        assert calls == ["a"]

    @pytest.mark.asyncio
    async def test_different_arguments_use_different_keys(self, cache_manager):
        calls = []

        @cacheable("detail:{item_id}", ttl_ms=60_000, manager=cache_manager)
        async def get_item(item_id: str) -> dict:
            calls.append(item_id)
            return {"id": item_id}

        await get_item("a")
        await get_item("b")
        await get_item(item_id="a")

        assert calls == ["a", "b"]

    @pytest.mark.asyncio
    async def test_query_order_does_not_split_cache(self, cache_manager):
        calls = []

        @cacheable("list:{user_id}:{query}", ttl_ms=60_000, manager=cache_manager)
        async def list_items(user_id: str, query: dict) -> list:
            calls.append(query)
            return [1, 2]

        await list_items("u1", {"status": "active", "page": 2})
        await list_items("u1", {"page": 2, "status": "active"})

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_none_result_is_not_cached(self, cache_manager):
        calls = []

        @cacheable("maybe:{x}", ttl_ms=60_000, manager=cache_manager)
        async def maybe(x: int):
            calls.append(x)
            return None

        assert await maybe(1) is None
        assert await maybe(1) is None
        assert calls == [1, 1]

    @pytest.mark.asyncio
    async def test_miss_and_hit_return_the_same_form(self, cache_manager):
        class Item(BaseModel):
            id: str
            created: datetime
            tags: tuple[str, ...]

        @cacheable("item:{item_id}", ttl_ms=60_000, manager=cache_manager)
        async def get_item(item_id: str) -> Item:
            return Item(id=item_id, created=datetime(2024, 1, 1), tags=("a", "b"))

        first = await get_item("a")
        second = await get_item("a")

        assert first == second
        assert type(first) is type(second) is dict
        assert first == {"id": "a", "created": "2024-01-01T00:00:00", "tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_unserializable_result_is_returned_uncached(self, cache_manager):
        marker = object()
        calls = []

        @cacheable("opaque:{x}", ttl_ms=60_000, manager=cache_manager)
        async def handler(x: int) -> object:
            calls.append(x)
            return marker

        assert await handler(1) is marker
        assert await handler(1) is marker
        assert calls == [1, 1]
        assert cache_manager.get_stats().errors == 2

    @pytest.mark.asyncio
    async def test_handler_error_propagates_and_is_not_cached(self, cache_manager):
        calls = []

        @cacheable("boom:{x}", ttl_ms=60_000, manager=cache_manager)
        async def boom(x: int) -> int:
            calls.append(x)
            if len(calls) == 1:
                raise ValueError("source failed")
            return x

        with pytest.raises(ValueError):
            await boom(1)
        assert await boom(1) == 1

    @pytest.mark.asyncio
    async def test_default_arguments_are_part_of_key(self, cache_manager):
        @cacheable("page:{page}", ttl_ms=60_000, manager=cache_manager)
        async def page(page: int = 1) -> dict:
            return {"page": page}

        await page()
        assert await cache_manager.get("page:1") == {"page": 1}

    @pytest.mark.asyncio
    async def test_principal_id_from_request_context(self, cache_manager):
        @cacheable("mine:{principal_id}", ttl_ms=60_000, manager=cache_manager)
        async def mine() -> dict:
            return {"ok": True}

        set_request_context(principal_id="u7")
        await mine()

        assert await cache_manager.get("mine:u7") == {"ok": True}

    @pytest.mark.asyncio
    async def test_anonymous_principal_in_key(self, cache_manager):
        @cacheable("mine:{principal_id}", ttl_ms=60_000, manager=cache_manager)
        async def mine() -> dict:
            return {"ok": True}

        await mine()
        assert await cache_manager.get("mine:anonymous") == {"ok": True}

    @pytest.mark.asyncio
    async def test_no_cache_bypasses_cache(self, cache_manager):
        calls = []

        @cacheable("bypass:{x}", ttl_ms=60_000, manager=cache_manager)
        async def handler(x: int) -> int:
            calls.append(x)
            return x

        await handler(1)
        await handler(1, no_cache=True)

        assert calls == [1, 1]

    @pytest.mark.asyncio
    async def test_cache_disabled_calls_handler(self, cache_manager):
        calls = []

        @cacheable("disabled:{x}", ttl_ms=60_000, manager=cache_manager)
        async def handler(x: int) -> int:
            calls.append(x)
            return x

        with patch("readthrough.cache.decorators.settings") as mock_settings:
            mock_settings.cache_enabled = False
            await handler(1)
            await handler(1)

        assert calls == [1, 1]
        assert await cache_manager.get("disabled:1") is None

    @pytest.mark.asyncio
    async def test_store_outage_serves_from_source(self, flaky_store):
        manager = CacheManager(store=flaky_store)
        flaky_store.fail_get = True
        flaky_store.fail_set = True

        @cacheable("outage:{x}", ttl_ms=60_000, manager=manager)
        async def handler(x: int) -> int:
            return x + 1

        assert await handler(1) == 2
        assert manager.get_stats().errors == 2

    @pytest.mark.asyncio
    async def test_uses_global_manager(self, global_cache_manager):
        @cacheable("global:{x}", ttl_ms=60_000)
        async def handler(x: int) -> int:
            return x

        await handler(3)
        assert await global_cache_manager.get("global:3") == 3

    @pytest.mark.asyncio
    async def test_methods_can_be_cached(self, cache_manager):
        class Service:
            def __init__(self):
                self.calls = 0

            @cacheable("svc:{item_id}", ttl_ms=60_000, manager=cache_manager)
            async def get(self, item_id: str) -> dict:
                self.calls += 1
                return {"id": item_id}

        service = Service()
        await service.get("a")
        await service.get("a")
        assert service.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_each_call_handler(self, cache_manager):
        calls = []

        @cacheable("race:{x}", ttl_ms=60_000, manager=cache_manager)
        async def slow(x: int) -> int:
            calls.append(x)
            await asyncio.sleep(0.01)
            return x

        results = await asyncio.gather(slow(1), slow(1))

        assert results == [1, 1]
        assert len(calls) == 2
        assert await cache_manager.get("race:1") == 1

    @pytest.mark.asyncio
    async def test_exposed_helpers(self, cache_manager):
        @cacheable("detail:{item_id}", ttl_ms=1234, manager=cache_manager)
        async def get_item(item_id: str) -> dict:
            return {"id": item_id}

        assert get_item.key_template.pattern == "detail:{item_id}"
        assert get_item.ttl_ms == 1234
        assert get_item.cache_key("x") == "detail:x"

        await get_item("x")
        assert await get_item.invalidate("x")
        assert await cache_manager.get("detail:x") is None

    def test_unknown_placeholder_fails_at_registration(self):
        with pytest.raises(KeyTemplateError) as exc_info:

            @cacheable("detail:{missing}")
            async def get_item(item_id: str) -> dict:
                return {}

        assert exc_info.value.details["missing"] == ["missing"]

    def test_result_placeholder_not_available_for_reads(self):
        with pytest.raises(KeyTemplateError):

            @cacheable("detail:{result.id}")
            async def get_item(item_id: str) -> dict:
                return {}


class TestTtlBoundaries:
    """Entries are served until the TTL elapses and reloaded after."""

    @pytest.mark.asyncio
    async def test_list_cached_for_ttl(self, cache_manager, clock):
        calls = []

        @cacheable("list:{user_id}:{query}", ttl_ms=300_000, manager=cache_manager)
        async def list_items(user_id: str, query: dict) -> list:
            calls.append(user_id)
            return [{"id": "i1"}]

        await list_items("u1", {})
        assert await cache_manager.get("list:u1:{}") == [{"id": "i1"}]

        clock.advance_ms(100_000)
        await list_items("u1", {})
        assert len(calls) == 1

        clock.advance_ms(200_001)
        await list_items("u1", {})
        assert len(calls) == 2


class TestOwnership:
    """Cached values are re-checked against the requesting principal."""

    @pytest.fixture
    def detail_handler(self, cache_manager):
        items = {"d1": {"id": "d1", "owner": "u1"}}
        calls = []

        @cacheable(
            "detail:{item_id}",
            ttl_ms=900_000,
            owner_of=lambda item: item["owner"],
            manager=cache_manager,
        )
        async def get_item(item_id: str) -> dict:
            calls.append(item_id)
            item = items[item_id]
            if item["owner"] != get_principal_id():
                raise NotFoundError("Item", item_id)
            return item

        get_item.calls = calls
        return get_item

    @pytest.mark.asyncio
    async def test_owner_hits_cache(self, detail_handler):
        with principal_scope("u1"):
            await detail_handler("d1")
            await detail_handler("d1")

        assert detail_handler.calls == ["d1"]

    @pytest.mark.asyncio
    async def test_other_principal_gets_source_outcome(self, detail_handler, cache_manager):
        with principal_scope("u1"):
            owned = await detail_handler("d1")

        with principal_scope("u2"):
            with pytest.raises(NotFoundError):
                await detail_handler("d1")

        assert owned["owner"] == "u1"
        assert cache_manager.get_stats().ownership_rejections == 1
        # The owner's entry is left in place
        assert await cache_manager.get("detail:d1") == owned

    @pytest.mark.asyncio
    async def test_anonymous_never_passes_ownership(self, detail_handler):
        with principal_scope("u1"):
            await detail_handler("d1")

        with pytest.raises(NotFoundError):
            await detail_handler("d1")

    @pytest.mark.asyncio
    async def test_unreadable_owner_is_rejected(self, cache_manager):
        calls = []

        @cacheable(
            "odd:{x}",
            ttl_ms=60_000,
            owner_of=lambda value: value["owner"],
            manager=cache_manager,
        )
        async def handler(x: str) -> dict:
            calls.append(x)
            return {"no_owner": True}

        with principal_scope("u1"):
            await handler("a")
            await handler("a")

        assert calls == ["a", "a"]


class TestCacheEvict:
    """Tests for post-success eviction."""

    @pytest.mark.asyncio
    async def test_evicts_after_success(self, cache_manager):
        await cache_manager.set("user_profile:u1", {"name": "old"}, 60_000)

        @cache_evict("user_profile:{user_id}", manager=cache_manager)
        async def update(user_id: str, data: dict) -> dict:
            return {"id": user_id, **data}

        result = await update("u1", {"name": "new"})

        assert result == {"id": "u1", "name": "new"}
        assert await cache_manager.get("user_profile:u1") is None

    @pytest.mark.asyncio
    async def test_no_eviction_when_handler_raises(self, cache_manager):
        await cache_manager.set("user_profile:u1", {"name": "old"}, 60_000)

        @cache_evict("user_profile:{user_id}", manager=cache_manager)
        async def update(user_id: str) -> dict:
            raise ValueError("conflict")

        with pytest.raises(ValueError):
            await update("u1")

        assert await cache_manager.get("user_profile:u1") == {"name": "old"}

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_evicting(self, flaky_store):
        manager = CacheManager(store=flaky_store)
        flaky_store.fail_delete_keys = {"k:2"}

        @cache_evict("k:1", "k:2", "k:3", manager=manager)
        async def mutate() -> str:
            return "done"

        assert await mutate() == "done"
        assert flaky_store.deleted == ["k:1", "k:3"]

    @pytest.mark.asyncio
    async def test_result_fields_in_keys(self, cache_manager):
        await cache_manager.set("detail:i9", {"stale": True}, 60_000)

        @cache_evict("detail:{result.id}", manager=cache_manager)
        async def create(payload: dict) -> dict:
            return {"id": "i9", **payload}

        await create({"name": "x"})
        assert await cache_manager.get("detail:i9") is None

    @pytest.mark.asyncio
    async def test_unresolvable_key_is_logged_not_raised(self, cache_manager):
        await cache_manager.set("other:1", 1, 60_000)

        @cache_evict("detail:{result.id}", "other:1", manager=cache_manager)
        async def delete() -> None:
            return None

        assert await delete() is None
        assert await cache_manager.get("other:1") is None

    @pytest.mark.asyncio
    async def test_evicts_even_when_cache_disabled(self, cache_manager):
        await cache_manager.set("k", 1, 60_000)

        @cache_evict("k", manager=cache_manager)
        async def mutate() -> None:
            return None

        with patch("readthrough.cache.decorators.settings") as mock_settings:
            mock_settings.cache_enabled = False
            await mutate()

        assert await cache_manager.get("k") is None

    def test_requires_a_key(self):
        with pytest.raises(KeyTemplateError):
            cache_evict()

    def test_unknown_placeholder_fails_at_registration(self):
        with pytest.raises(KeyTemplateError):

            @cache_evict("detail:{item_id}")
            async def update(list_id: str) -> None:
                return None

    def test_templates_are_exposed(self):
        @cache_evict("a:{x}", "b")
        async def update(x: str) -> None:
            return None

        assert [t.pattern for t in update.evict_templates] == ["a:{x}", "b"]


class TestCreateFlow:
    """A create evicts the common list and the new entity's detail key."""

    @pytest.mark.asyncio
    async def test_create_evicts_listed_keys_only(self, cache_manager, clock):
        items: list[dict] = []

        @cacheable("list:{user_id}:{query}", ttl_ms=300_000, manager=cache_manager)
        async def list_items(user_id: str, query: dict) -> list:
            status = query.get("status")
            return [i for i in items if status is None or i["status"] == status]

        @cache_evict("list:{user_id}:{{}}", "detail:{result.id}", manager=cache_manager)
        async def create_item(user_id: str, payload: dict) -> dict:
            item = {"id": f"i{len(items) + 1}", "user_id": user_id, **payload}
            items.append(item)
            return item

        assert await list_items("u1", {}) == []
        assert await list_items("u1", {"status": "archived"}) == []

        created = await create_item("u1", {"status": "archived"})

        assert await list_items("u1", {}) == [created]
        # Other query shapes stay stale until their TTL runs out
        assert await list_items("u1", {"status": "archived"}) == []

        clock.advance_ms(300_001)
        assert await list_items("u1", {"status": "archived"}) == [created]
