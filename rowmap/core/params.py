"""SQL parameter binding and normalization.

``get_params`` turns the many shapes callers pass as command parameters
into a flat ``name -> value`` dict. ``normalize_params`` converts the
``:name`` placeholders emitted by the command builder to the driver's
parameter style, leaving string literals and PostgreSQL ``::typecast``
syntax alone.
"""

from __future__ import annotations

import enum
import re
import uuid
from collections.abc import Iterable, Iterator, Mapping
from functools import lru_cache
from typing import Any

from rowmap.core.exceptions import BindingError
from rowmap.mapping.introspect import is_basic, typename
from rowmap.mapping.protocol import DescriptorProvider
from rowmap.mapping.registry import default_registry

# Matches :name but not ::typecast and not inside words
# Negative lookbehind for : (handles ::), \w (handles mid-word colons)
_PARAM_PATTERN = re.compile(r"(?<![:\w]):([a-zA-Z_]\w*)")

# Matches single-quoted string literals (with escaped quotes handled)
_STRING_LITERAL_PATTERN = re.compile(r"'(?:[^'\\]|''|\\.)*'")

_UNSUPPORTED = object()


def normalize_params(sql: str, paramstyle: str) -> str:
    """Convert :name parameters to the target param style.

    Args:
        sql: SQL string with :name parameters.
        paramstyle: Target style - 'named' (no conversion) or 'pyformat' (%(name)s).

    Returns:
        SQL with parameters converted to the target style.
    """
    if paramstyle == "named":
        return sql
    return _convert_to_pyformat(sql)


@lru_cache(maxsize=256)
def _convert_to_pyformat(sql: str) -> str:
    """Convert :name params to %(name)s, preserving string literals."""
    # Tokenize: split into string literals and non-literal segments
    parts: list[str] = []
    last_end = 0

    for match in _STRING_LITERAL_PATTERN.finditer(sql):
        start, end = match.span()
        if start > last_end:
            parts.append(_escape_percent(sql[last_end:start]))
        parts.append(match.group().replace("%", "%%"))
        last_end = end

    if last_end < len(sql):
        parts.append(_escape_percent(sql[last_end:]))

    return "".join(parts)


def _escape_percent(segment: str) -> str:
    return _PARAM_PATTERN.sub(r"%(\1)s", segment.replace("%", "%%"))


@lru_cache(maxsize=256)
def placeholder_names(sql: str) -> frozenset[str]:
    """Names of the :name placeholders in *sql*, ignoring string literals."""
    return frozenset(_PARAM_PATTERN.findall(_STRING_LITERAL_PATTERN.sub("''", sql)))


def referenced_params(sql: str, params: dict[str, Any]) -> dict[str, Any]:
    """Drop parameters *sql* does not reference.

    Statements without :name placeholders get *params* unchanged, since
    they may use the driver's own style.
    """
    names = placeholder_names(sql)
    if not names:
        return dict(params)
    return {name: value for name, value in params.items() if name in names}


# --- Binding ---


def _pair(element: Any) -> tuple[Any, Any] | None:
    """Return ``(key, value)`` for pair-shaped elements, else None."""
    if isinstance(element, tuple) and len(element) == 2 and isinstance(element[0], str):
        return element[0], element[1]
    if isinstance(element, (str, bytes, Mapping)):
        return None
    for key_attr, value_attr in (("key", "value"), ("item1", "item2")):
        if hasattr(element, key_attr) and hasattr(element, value_attr):
            return getattr(element, key_attr), getattr(element, value_attr)
    return None


def _bind(source: Any, registry: DescriptorProvider) -> Any:
    if isinstance(source, Mapping):
        return dict(source)

    if hasattr(source, "_asdict") and isinstance(source, tuple):
        return dict(source._asdict())

    pair = _pair(source)
    if pair is not None:
        return {pair[0]: pair[1]}

    if isinstance(source, (str, bytes, bytearray)) or is_basic(type(source)):
        return _UNSUPPORTED

    if isinstance(source, (list, tuple, set, frozenset, Iterator)):
        return _bind_pairs(source)

    descriptor = registry.get_or_create(type(source))
    if descriptor.is_composite:
        return {m.name: m.get_value(source) for m in descriptor.select_members if m.readable}

    if isinstance(source, Iterable):
        return _bind_pairs(source)
    return _UNSUPPORTED


def _bind_pairs(source: Iterable[Any]) -> Any:
    params: dict[str, Any] = {}
    for element in source:
        found = _pair(element)
        if found is None:
            return _UNSUPPORTED
        params[found[0]] = found[1]
    return params


def get_params(source: Any, registry: DescriptorProvider | None = None) -> dict[str, Any]:
    """Convert *source* into an insertion-ordered ``name -> value`` dict.

    Accepted shapes: ``None``, a ``(name, value)`` pair, a mapping, an
    iterable of pairs (2-tuples or objects exposing ``key``/``value`` or
    ``item1``/``item2``), a single object exposing those facets, or a plain
    object whose column-mapped and key members are read through its
    descriptor. Unsupported shapes yield an empty dict.
    """
    if source is None:
        return {}
    bound = _bind(source, registry or default_registry)
    if bound is _UNSUPPORTED:
        return {}
    return bound  # type: ignore[no-any-return]


def require_params(source: Any, registry: DescriptorProvider | None = None) -> dict[str, Any]:
    """Like ``get_params`` but raise ``BindingError`` for unsupported shapes."""
    if source is None:
        raise BindingError("NoneType", "parameters are required")
    bound = _bind(source, registry or default_registry)
    if bound is _UNSUPPORTED:
        raise BindingError(typename(type(source)), "unsupported parameter shape")
    return bound  # type: ignore[no-any-return]


def to_db_value(value: Any) -> Any:
    """Adapt Python values the drivers do not bind natively."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def coerce_params(params: dict[str, Any] | None) -> dict[str, Any]:
    """Copy *params* with every value passed through ``to_db_value``."""
    if not params:
        return {}
    return {name: to_db_value(value) for name, value in params.items()}
