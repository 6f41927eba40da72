"""Key templates and canonical cache keys.

A key template is a string such as ``"shopping_lists:list:{principal_id}:{query}"``.
It is parsed once into literal segments and named slots; resolving it against
a call context is a direct substitution.
"""

import json
import string
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, Iterable, Optional, Union

from readthrough.context import ANONYMOUS
from readthrough.errors import KeyTemplateError

# Ambient fields every template may reference besides handler arguments
PRINCIPAL_FIELD = "principal_id"
RESULT_FIELD = "result"

_formatter = string.Formatter()

# A token is (literal, None) or (None, field_path)
Token = tuple[Optional[str], Optional[tuple[str, ...]]]


class KeyTemplate:
    """Immutable, pre-parsed cache key template.

    Placeholders use ``{name}`` syntax. Dotted paths (``{result.id}``) follow
    mapping keys or attributes. ``{{`` and ``}}`` produce literal braces.
    """

    __slots__ = ("pattern", "fields", "_tokens")

    def __init__(self, pattern: str):
        self.pattern = pattern
        self._tokens = _parse(pattern)
        self.fields = frozenset(path[0] for _, path in self._tokens if path)

    def __repr__(self) -> str:
        return f"KeyTemplate({self.pattern!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, KeyTemplate) and other.pattern == self.pattern

    def __hash__(self) -> int:
        return hash(self.pattern)

    @property
    def is_static(self) -> bool:
        """True when the template has no placeholders."""
        return not self.fields

    def validate(self, available: Iterable[str]) -> None:
        """Fail if the template references fields a call will never supply.

        Args:
            available: Field names the call context is guaranteed to contain

        Raises:
            KeyTemplateError: listing every unresolved placeholder
        """
        known = set(available)
        missing = sorted(self.fields - known)
        if missing:
            raise KeyTemplateError(
                f"Key template {self.pattern!r} has unresolved placeholder(s): "
                f"{', '.join(missing)}",
                details={"template": self.pattern, "missing": missing, "available": sorted(known)},
            )

    def resolve(self, context: Mapping[str, Any]) -> str:
        """Interpolate the template with values from ``context``."""
        parts = []
        for literal, path in self._tokens:
            if path is None:
                parts.append(literal)
            else:
                parts.append(_render(path[0], _lookup(self.pattern, context, path)))
        return "".join(parts)


def _parse(pattern: str) -> tuple[Token, ...]:
    try:
        parsed = list(_formatter.parse(pattern))
    except ValueError as e:
        raise KeyTemplateError(f"Malformed key template {pattern!r}: {e}") from e

    tokens: list[Token] = []
    for literal, field_name, format_spec, conversion in parsed:
        if literal:
            tokens.append((literal, None))
        if field_name is None:
            continue
        if not field_name:
            raise KeyTemplateError(f"Key template {pattern!r} has an unnamed placeholder")
        if format_spec or conversion:
            raise KeyTemplateError(
                f"Key template {pattern!r} uses a format spec or conversion in {{{field_name}}}"
            )
        path = tuple(field_name.split("."))
        if not all(part.isidentifier() for part in path):
            raise KeyTemplateError(
                f"Key template {pattern!r} has an invalid placeholder {{{field_name}}}"
            )
        tokens.append((None, path))
    return tuple(tokens)


def _lookup(pattern: str, context: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    try:
        value = context[path[0]]
    except KeyError:
        raise KeyTemplateError(
            f"Key template {pattern!r} needs {path[0]!r}, which the call did not supply"
        ) from None

    for attr in path[1:]:
        try:
            value = value[attr] if isinstance(value, Mapping) else getattr(value, attr)
        except (KeyError, AttributeError):
            raise KeyTemplateError(
                f"Key template {pattern!r} cannot read {'.'.join(path)}"
            ) from None
    return value


def _render(field: str, value: Any) -> str:
    if value is None:
        return ANONYMOUS if field == PRINCIPAL_FIELD else "null"
    if isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return canonicalize(value)


def canonicalize(value: Any) -> str:
    """Render a query object as one deterministic string.

    Mapping keys are sorted at every depth and ``None`` values are dropped,
    so ``{"status": "active", "page": 2}`` and ``{"page": 2, "status": "active"}``
    give the same fragment. Sequence order is kept.
    """
    return json.dumps(
        _normalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def _normalize(arg: Any) -> Any:
    """Reduce an argument to JSON-compatible data for key building."""
    if isinstance(arg, (str, int, float, bool, type(None))):
        return arg
    elif hasattr(arg, "model_dump"):
        return _normalize(arg.model_dump(mode="json"))
    elif isinstance(arg, Mapping):
        return {str(k): _normalize(v) for k, v in arg.items() if v is not None}
    elif isinstance(arg, (list, tuple)):
        return [_normalize(a) for a in arg]
    elif isinstance(arg, (set, frozenset)):
        return sorted((_normalize(a) for a in arg), key=canonicalize)
    else:
        # For complex objects, use string representation
        return str(arg)


@lru_cache(maxsize=1024)
def parse_template(pattern: str) -> KeyTemplate:
    """Parse ``pattern`` once; later calls with the same string reuse it."""
    return KeyTemplate(pattern)


def resolve(template: Union[str, KeyTemplate], context: Mapping[str, Any]) -> str:
    """Resolve a template (string or pre-parsed) against a call context."""
    if isinstance(template, str):
        template = parse_template(template)
    return template.resolve(context)
