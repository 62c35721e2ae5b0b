"""Value coercion from driver values to declared member types.

Coercion is pydantic's lax-mode validation of the value against the
member's declared type, so ``"42"`` becomes ``42``, ``"2024-03-01"`` a
``date`` and ``["1", "2"]`` a ``list[int]``.
"""

from __future__ import annotations

import inspect
from dataclasses import is_dataclass
from datetime import date, datetime
from functools import lru_cache
from typing import Any, get_origin, is_typeddict

from pydantic import BaseModel, ConfigDict, PydanticUserError, TypeAdapter, ValidationError

from rowmap.core.exceptions import MappingError
from rowmap.mapping.introspect import is_enum, type_endpoint, typename

TRIM_CHARS = "\ufeff\u200b \r\n\t"

# Numeric keys read into str members; unknown classes validate by isinstance.
_LAX = ConfigDict(coerce_numbers_to_str=True, arbitrary_types_allowed=True)


def _owns_config(target: Any) -> bool:
    return (
        is_dataclass(target)
        or is_typeddict(target)
        or (inspect.isclass(target) and get_origin(target) is None and issubclass(target, BaseModel))
    )


@lru_cache(maxsize=512)
def _adapter(target: Any) -> TypeAdapter[Any]:
    if _owns_config(target):
        return TypeAdapter(target)
    return TypeAdapter(target, config=_LAX)


def _prepare(value: Any, target: Any) -> Any:
    if target is date and isinstance(value, str) and len(value.strip()) > 10:
        value = _adapter(datetime).validate_python(value.strip())
    if target is date and isinstance(value, datetime):
        return value.date()
    if is_enum(target) and isinstance(value, str):
        return target.__members__.get(value.strip(), value)
    return value


def change_type(value: Any, target: Any) -> Any:
    """Convert *value* to *target*.

    ``None`` passes through unchanged, as does any value when *target* is
    ``Any`` or ``object``. Values already of the target type are returned
    as-is.

    Raises:
        MappingError: If the value cannot be represented as *target*.
    """
    if value is None:
        return None
    target = type_endpoint(target)
    if target is Any or target is object or type(value) is target:
        return value
    try:
        return _adapter(target).validate_python(_prepare(value, target))
    except (ValidationError, PydanticUserError) as e:
        raise MappingError(f"Cannot convert {value!r} to {typename(target)}: {e}") from e


def trim_value(value: Any) -> Any:
    """Strip BOM, zero-width space and whitespace from strings."""
    if isinstance(value, str):
        return value.strip(TRIM_CHARS)
    return value
