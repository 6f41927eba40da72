"""Read-through and eviction wrappers for async handlers."""

import inspect
from contextvars import ContextVar
from functools import wraps
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, TypeVar, Union

import structlog

from readthrough.config.settings import settings
from readthrough.context import get_principal_id
from readthrough.errors import KeyTemplateError

from .keys import PRINCIPAL_FIELD, RESULT_FIELD, KeyTemplate
from .manager import CacheManager, get_cache_manager

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Any])
OwnerOf = Callable[[Any], Any]

# Context variable to track cache hit status for observability
# None = not a cached call, True = cache hit, False = cache miss
_cache_hit_status: ContextVar[Optional[bool]] = ContextVar("cache_hit_status", default=None)


def get_cache_hit_status() -> Optional[bool]:
    """Get the cache hit status from the current context.

    Returns:
        True if the last cached call was a cache hit,
        False if it was a cache miss,
        None if no cached call was made.
    """
    return _cache_hit_status.get()


def clear_cache_hit_status() -> None:
    """Clear the cache hit status in the current context."""
    _cache_hit_status.set(None)


def _as_template(key: Union[str, KeyTemplate]) -> KeyTemplate:
    return key if isinstance(key, KeyTemplate) else KeyTemplate(key)


def _context_fields(signature: inspect.Signature) -> set[str]:
    """Names a call context built from ``signature`` always contains."""
    fields = {
        name
        for name, param in signature.parameters.items()
        if param.kind not in (param.VAR_POSITIONAL, param.VAR_KEYWORD)
    }
    fields.add(PRINCIPAL_FIELD)
    return fields


def build_context(
    signature: inspect.Signature,
    args: tuple,
    kwargs: Mapping[str, Any],
) -> dict[str, Any]:
    """Assemble the key context for one call: bound arguments plus principal.

    Raises:
        TypeError: if the arguments do not match the handler signature
    """
    bound = signature.bind(*args, **kwargs)
    bound.apply_defaults()

    context: dict[str, Any] = {}
    for name, value in bound.arguments.items():
        param = signature.parameters[name]
        if param.kind == param.VAR_KEYWORD:
            context.update(value)
        elif param.kind != param.VAR_POSITIONAL:
            context[name] = value
    context.setdefault(PRINCIPAL_FIELD, get_principal_id())
    return context


def _owned_by(owner_of: OwnerOf, value: Any, principal_id: Optional[str]) -> bool:
    if principal_id is None:
        return False
    try:
        owner = owner_of(value)
    except (KeyError, AttributeError, TypeError):
        return False
    return owner is not None and str(owner) == str(principal_id)


async def read_through(
    cache: CacheManager,
    key: str,
    ttl_ms: int,
    loader: Callable[[], Awaitable[Any]],
    owner_of: Optional[OwnerOf] = None,
    principal_id: Optional[str] = None,
) -> Any:
    """Serve ``key`` from cache, or run ``loader`` and cache its result.

    When ``owner_of`` is given, a hit is returned only if the cached value
    belongs to ``principal_id`` (the request principal if None). A rejected
    hit runs ``loader`` exactly as a cold lookup would, so the caller sees
    the source's own outcome. None results are never cached. A miss returns
    the loaded value in the same JSON-decoded form a later hit returns.
    """
    cached_value = await cache.get(key)
    if cached_value is not None:
        principal = principal_id if principal_id is not None else get_principal_id()
        if owner_of is None or _owned_by(owner_of, cached_value, principal):
            _cache_hit_status.set(True)
            return cached_value
        cache.record_ownership_rejection(key)

    result = await loader()
    _cache_hit_status.set(False)

    if result is None:
        return None
    return await cache.store_loaded(key, result, ttl_ms)


async def evict_keys(
    cache: CacheManager,
    templates: Iterable[KeyTemplate],
    context: Mapping[str, Any],
) -> list[str]:
    """Resolve and delete each template independently.

    Failures are logged per key and never raised.

    Returns:
        The keys that were deleted
    """
    keys = []
    for template in templates:
        try:
            keys.append(template.resolve(context))
        except KeyTemplateError as e:
            logger.error("cache_evict_failed", template=template.pattern, error=str(e))
    return await delete_keys(cache, keys)


async def delete_keys(cache: CacheManager, keys: Iterable[str]) -> list[str]:
    """Delete resolved keys one by one, logging each failure.

    Returns:
        The keys that were deleted
    """
    evicted = []
    for key in keys:
        if await cache.delete(key):
            evicted.append(key)
        else:
            logger.error("cache_evict_failed", key=key[:80])

    logger.debug("cache_evicted", keys=evicted)
    return evicted


def cacheable(
    key: Union[str, KeyTemplate],
    ttl_ms: Optional[int] = None,
    owner_of: Optional[OwnerOf] = None,
    manager: Optional[CacheManager] = None,
) -> Callable[[F], F]:
    """Decorator to serve a side-effect-free async handler through the cache.

    The key template may reference any handler parameter and ``principal_id``.
    Unknown placeholders raise :class:`KeyTemplateError` when the decorator is
    applied, not when the handler is called.

    Args:
        key: Key template, e.g. ``"user_profile:{user_id}"``
        ttl_ms: Time to live in milliseconds (settings default if None)
        owner_of: Extracts the owning principal id from a cached value; hits
            owned by someone else are rejected
        manager: Cache manager to use (global manager if None)

    Usage:
        @cacheable("list:{user_id}:{query}", ttl_ms=300_000)
        async def list_items(user_id: str, query: dict) -> list[dict]:
            ...

        # To bypass cache:
        await list_items("u1", {}, no_cache=True)
    """
    template = _as_template(key)

    def decorator(func: F) -> F:
        signature = inspect.signature(func)
        template.validate(_context_fields(signature))

        def resolve_key(*args: Any, **kwargs: Any) -> str:
            return template.resolve(build_context(signature, args, kwargs))

        @wraps(func)
        async def wrapper(*args: Any, no_cache: bool = False, **kwargs: Any) -> Any:
            if not settings.cache_enabled or no_cache:
                return await func(*args, **kwargs)

            try:
                resolved = resolve_key(*args, **kwargs)
            except (KeyTemplateError, TypeError) as e:
                logger.error("cache_key_unresolved", func=func.__name__, error=str(e))
                return await func(*args, **kwargs)

            ttl = ttl_ms if ttl_ms is not None else settings.cache_ttl_default_ms
            return await read_through(
                manager or get_cache_manager(),
                resolved,
                ttl,
                lambda: func(*args, **kwargs),
                owner_of=owner_of,
            )

        async def invalidate(*args: Any, **kwargs: Any) -> bool:
            """Delete the entry the given call arguments would read."""
            return await (manager or get_cache_manager()).delete(resolve_key(*args, **kwargs))

        wrapper.key_template = template  # type: ignore[attr-defined]
        wrapper.ttl_ms = ttl_ms  # type: ignore[attr-defined]
        wrapper.cache_key = resolve_key  # type: ignore[attr-defined]
        wrapper.invalidate = invalidate  # type: ignore[attr-defined]
        return wrapper  # type: ignore

    return decorator


def cache_evict(
    *keys: Union[str, KeyTemplate],
    manager: Optional[CacheManager] = None,
) -> Callable[[F], F]:
    """Decorator to evict cache entries after a mutating async handler succeeds.

    Templates may reference handler parameters, ``principal_id`` and
    ``result`` (the handler's return value, e.g. ``"detail:{result.id}"``).
    Nothing is evicted when the handler raises. Only the listed keys are
    evicted; list entries cached under other query shapes stay until their
    own TTL runs out.

    Usage:
        @cache_evict("list:{user_id}:{{}}", "detail:{result.id}")
        async def create_item(user_id: str, payload: dict) -> dict:
            ...
    """
    if not keys:
        raise KeyTemplateError("cache_evict needs at least one key template")
    templates = tuple(_as_template(k) for k in keys)

    def decorator(func: F) -> F:
        signature = inspect.signature(func)
        available = _context_fields(signature) | {RESULT_FIELD}
        for template in templates:
            template.validate(available)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            result = await func(*args, **kwargs)

            # The mutation has committed; eviction problems stay in the logs
            context = build_context(signature, args, kwargs)
            context[RESULT_FIELD] = result
            await evict_keys(manager or get_cache_manager(), templates, context)
            return result

        wrapper.evict_templates = templates  # type: ignore[attr-defined]
        return wrapper  # type: ignore

    return decorator
