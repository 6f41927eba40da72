"""Per-request call context: request id and authenticated principal.

Values live in context variables so every task sees its own request. The
principal id is the ambient ``principal_id`` field available to every cache
key template.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

ANONYMOUS = "anonymous"

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_principal_id: ContextVar[Optional[str]] = ContextVar("principal_id", default=None)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def get_principal_id() -> Optional[str]:
    """Get the authenticated principal for the current request, if any."""
    return _principal_id.get()


def set_request_context(
    request_id: Optional[str] = None,
    principal_id: Optional[str] = None,
) -> None:
    """Set request context for cache keys and log correlation."""
    if request_id:
        _request_id.set(request_id)
    if principal_id:
        _principal_id.set(principal_id)


def clear_request_context() -> None:
    """Clear request context."""
    _request_id.set(None)
    _principal_id.set(None)


@contextmanager
def principal_scope(principal_id: Optional[str]) -> Iterator[None]:
    """Run a block on behalf of ``principal_id``.

    Usage:
        with principal_scope("u1"):
            await service.list_lists("u1", {})
    """
    token = _principal_id.set(principal_id)
    try:
        yield
    finally:
        _principal_id.reset(token)
