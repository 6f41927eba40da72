"""Declarative read-through caching and invalidation for async handlers."""

__version__ = "0.1.0"
