"""Raw member enumeration and type classification.

Supports dataclasses, Pydantic models, annotated plain classes and plain
classes whose members are only visible through ``__init__``.
"""

from __future__ import annotations

import dataclasses
import enum
import inspect
import logging
import types
import uuid
from collections.abc import Mapping, Sequence, Set
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Annotated, ClassVar, Union, get_args, get_origin, get_type_hints

logger = logging.getLogger(__name__)

NoneType = type(None)

BASIC_TYPES: frozenset[type] = frozenset(
    {
        int,
        float,
        complex,
        str,
        bool,
        bytes,
        bytearray,
        Decimal,
        datetime,
        date,
        time,
        timedelta,
        uuid.UUID,
        NoneType,
    }
)

NUMERIC_TYPES: frozenset[type] = frozenset({int, float, complex, Decimal})

FLOAT_TYPES: frozenset[type] = frozenset({float, Decimal})

_COLLECTION_ORIGINS = (list, set, frozenset, Sequence, Set)

_UNION_TYPES: tuple[Any, ...] = (Union, types.UnionType)

# base classes whose own properties are framework internals, not members
_FRAMEWORK_MODULES = frozenset({"builtins", "pydantic", "typing"})


class MemberKind(enum.Enum):
    FIELD = "field"
    PROPERTY = "property"


@dataclass(frozen=True)
class RawMember:
    """A member as found on the class, before any mapping is applied."""

    name: str
    declared_type: Any
    kind: MemberKind
    markers: tuple[Any, ...] = ()
    readable: bool = True
    writable: bool = True
    prop: property | None = field(default=None, compare=False)


# --- Classification ---


def strip_annotated(tp: Any) -> tuple[Any, tuple[Any, ...]]:
    """Split ``Annotated[T, *markers]`` into ``(T, markers)``."""
    if get_origin(tp) is Annotated:
        args = get_args(tp)
        return args[0], tuple(args[1:])
    return tp, ()


def is_optional(tp: Any) -> bool:
    """True for ``X | None`` and ``Optional[X]``."""
    if get_origin(tp) not in _UNION_TYPES:
        return False
    return NoneType in get_args(tp)


def unwrap_optional(tp: Any) -> Any:
    """Return ``X`` for ``X | None``; other types are returned unchanged."""
    if not is_optional(tp):
        return tp
    args = [arg for arg in get_args(tp) if arg is not NoneType]
    if len(args) == 1:
        return args[0]
    return Union[tuple(args)]  # noqa: UP007


def type_endpoint(tp: Any) -> Any:
    """The concrete class behind ``Annotated``/``Optional`` wrappers."""
    tp, _ = strip_annotated(tp)
    return unwrap_optional(tp)


def _is_class(tp: Any) -> bool:
    return inspect.isclass(tp) and get_origin(tp) is None


def is_enum(tp: Any) -> bool:
    tp = type_endpoint(tp)
    return _is_class(tp) and issubclass(tp, enum.Enum)


def is_basic(tp: Any) -> bool:
    """Scalar types that map to a single column value."""
    tp = type_endpoint(tp)
    if tp is Any:
        return False
    if _is_class(tp):
        return tp in BASIC_TYPES or issubclass(tp, (enum.Enum, str, int, float, Decimal))
    return False


def is_tuple(tp: Any) -> bool:
    tp = type_endpoint(tp)
    return tp is tuple or get_origin(tp) is tuple


def is_dictionary(tp: Any) -> bool:
    tp = type_endpoint(tp)
    origin = get_origin(tp) or tp
    return _is_class(origin) and issubclass(origin, Mapping)


def is_named_tuple(tp: Any) -> bool:
    """NamedTuples are records with named members, not collections."""
    tp = type_endpoint(tp)
    return _is_class(tp) and issubclass(tp, tuple) and hasattr(tp, "_fields")


def is_collection(tp: Any) -> bool:
    tp = type_endpoint(tp)
    if is_basic(tp) or is_dictionary(tp) or is_named_tuple(tp):
        return False
    origin = get_origin(tp) or tp
    if origin is tuple:
        return True
    return _is_class(origin) and issubclass(origin, _COLLECTION_ORIGINS)


def is_numeric(tp: Any) -> bool:
    tp = type_endpoint(tp)
    if not _is_class(tp) or issubclass(tp, bool):
        return False
    return any(issubclass(tp, numeric) for numeric in NUMERIC_TYPES)


def is_boolean(tp: Any) -> bool:
    return type_endpoint(tp) is bool


def is_float(tp: Any) -> bool:
    tp = type_endpoint(tp)
    return _is_class(tp) and any(issubclass(tp, f) for f in FLOAT_TYPES)


# --- Member enumeration ---


def _resolve_hints(cls: type) -> dict[str, Any]:
    """Resolve annotations including ``Annotated`` extras.

    When the class as a whole does not resolve, each class of the MRO is
    evaluated on its own and annotations still unresolved become ``Any``.
    """
    try:
        return get_type_hints(cls, include_extras=True)
    except (NameError, TypeError) as e:
        logger.debug("Falling back to per-class hint resolution for %s: %s", cls, e)

    hints: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        hints.update(_class_annotations(klass))
    return hints


def _class_annotations(klass: type) -> dict[str, Any]:
    try:
        return inspect.get_annotations(klass, eval_str=True)
    except Exception as e:  # noqa: BLE001
        logger.debug("Unresolved annotations on %s read as Any: %s", klass, e)
    return {
        name: Any if isinstance(annotation, str) else annotation
        for name, annotation in inspect.get_annotations(klass).items()
    }


def _is_classvar(tp: Any) -> bool:
    return tp is ClassVar or get_origin(tp) is ClassVar


def _dataclass_markers(cls: type) -> dict[str, tuple[Any, ...]]:
    if not dataclasses.is_dataclass(cls):
        return {}
    markers: dict[str, tuple[Any, ...]] = {}
    for f in dataclasses.fields(cls):
        found = f.metadata.get("rowmap")
        if found is None:
            continue
        markers[f.name] = tuple(found) if isinstance(found, (list, tuple)) else (found,)
    return markers


def _init_parameters(cls: type) -> dict[str, Any]:
    """Members of plain classes only visible through ``__init__``."""
    if cls.__init__ is object.__init__:
        return {}
    try:
        sig = inspect.signature(cls.__init__, eval_str=True)
    except (ValueError, TypeError):
        return {}
    except Exception as e:  # noqa: BLE001
        logger.debug("Unresolved __init__ annotations on %s read as Any: %s", cls, e)
        sig = inspect.signature(cls.__init__)
    params: dict[str, Any] = {}
    for name, param in list(sig.parameters.items())[1:]:
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = param.annotation
        unresolved = annotation is inspect.Parameter.empty or isinstance(annotation, str)
        params[name] = Any if unresolved else annotation
    return params



def enumerate_members(cls: type) -> list[RawMember]:
    """List the public fields and properties of *cls* in declaration order."""
    members: dict[str, RawMember] = {}
    metadata_markers = _dataclass_markers(cls)

    hints = _resolve_hints(cls)
    if not hints and not dataclasses.is_dataclass(cls) and not hasattr(cls, "model_fields"):
        hints = _init_parameters(cls)

    for name, hint in hints.items():
        if name.startswith("_") or _is_classvar(hint):
            continue
        if isinstance(inspect.getattr_static(cls, name, None), property):
            continue
        declared, markers = strip_annotated(hint)
        markers = markers + metadata_markers.get(name, ())
        members[name] = RawMember(
            name=name,
            declared_type=declared,
            kind=MemberKind.FIELD,
            markers=markers,
        )

    for slot in getattr(cls, "__slots__", ()):
        if isinstance(slot, str) and not slot.startswith("_") and slot not in members:
            members[slot] = RawMember(name=slot, declared_type=Any, kind=MemberKind.FIELD)

    for klass in reversed(cls.__mro__):
        if klass.__module__.split(".")[0] in _FRAMEWORK_MODULES:
            continue
        for name, value in vars(klass).items():
            if name.startswith("_") or not isinstance(value, property):
                continue
            declared: Any = Any
            markers: tuple[Any, ...] = ()
            if value.fget is not None:
                returns = _resolve_return(value.fget)
                declared, markers = strip_annotated(returns)
            members[name] = RawMember(
                name=name,
                declared_type=declared,
                kind=MemberKind.PROPERTY,
                markers=markers,
                readable=value.fget is not None,
                writable=value.fset is not None,
                prop=value,
            )

    return list(members.values())


def _resolve_return(func: Any) -> Any:
    try:
        return get_type_hints(func, include_extras=True).get("return", Any)
    except (NameError, TypeError):
        return Any


def is_frozen(cls: type) -> bool:
    """True for frozen dataclasses, whose fields need ``object.__setattr__``."""
    params = getattr(cls, "__dataclass_params__", None)
    return bool(params is not None and params.frozen)


def typename(tp: Any) -> str:
    return getattr(tp, "__qualname__", None) or getattr(tp, "__name__", None) or repr(tp)

