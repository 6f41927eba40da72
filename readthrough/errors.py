"""Exceptions raised by the caching layer and the services built on it."""

from typing import Any, Optional


class ReadthroughError(Exception):
    """Base exception for this package."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class KeyTemplateError(ReadthroughError):
    """A key template is malformed or references a field the call cannot supply.

    Raised when a wrapper or invalidation rule is registered, so a bad
    template fails before any request is served.
    """


class NotFoundError(ReadthroughError):
    """The requested entity does not exist or is not visible to the caller."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity} not found",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id
