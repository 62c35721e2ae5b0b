"""Accessor compilation.

Two tiers produce getters and setters with the same contract:

* the compiled tier uses ``operator.attrgetter``, the property's own
  ``fget``/``fset`` functions, or a setter bound to a validated
  identifier;
* the generic tier falls back to ``getattr``/``setattr`` and is used
  whenever compilation fails.

Fields are always gettable and settable. Read-only properties get no
setter (``None``); callers reject writes to them.
"""

from __future__ import annotations

import keyword
import logging
import operator
from dataclasses import dataclass
from typing import Any, Callable

from rowmap.mapping.introspect import MemberKind, RawMember

logger = logging.getLogger(__name__)

Getter = Callable[[Any], Any]
Setter = Callable[[Any, Any], None]


@dataclass(frozen=True)
class Accessor:
    """Getter/setter pair for one member."""

    getter: Getter | None
    setter: Setter | None
    compiled: bool


def _generic_getter(name: str) -> Getter:
    def get(obj: Any) -> Any:
        return getattr(obj, name)

    return get


def _generic_setter(name: str, frozen: bool) -> Setter:
    if frozen:

        def set_frozen(obj: Any, value: Any) -> None:
            object.__setattr__(obj, name, value)

        return set_frozen

    def set_(obj: Any, value: Any) -> None:
        setattr(obj, name, value)

    return set_


def _compile_setter(name: str) -> Setter:
    """Setter bound to one identifier, ``obj.<name> = value``."""
    if not name.isidentifier() or keyword.iskeyword(name):
        raise ValueError(f"Cannot compile a setter for {name!r}")

    def set_member(obj: Any, value: Any) -> None:
        setattr(obj, name, value)

    set_member.__name__ = set_member.__qualname__ = f"set_{name}"
    return set_member


def compile_accessor(member: RawMember, *, frozen: bool = False) -> Accessor:
    """Build the accessor pair for *member*.

    Args:
        member: The raw member to access.
        frozen: True when the owning class rejects normal attribute
            assignment (frozen dataclasses); setters then bypass
            ``__setattr__``.

    Returns:
        An ``Accessor``. ``compiled`` is False when the generic tier was used.
    """
    name = member.name

    if member.kind is MemberKind.PROPERTY and member.prop is not None:
        prop = member.prop
        getter = prop.fget if member.readable else None
        setter = prop.fset if member.writable else None
        return Accessor(getter=getter, setter=setter, compiled=True)  # type: ignore[arg-type]

    try:
        getter = operator.attrgetter(name)
        setter = _generic_setter(name, frozen=True) if frozen else _compile_setter(name)
    except (ValueError, TypeError) as e:
        logger.debug("Using generic accessors for member %r: %s", name, e)
        return Accessor(
            getter=_generic_getter(name),
            setter=_generic_setter(name, frozen),
            compiled=False,
        )
    return Accessor(getter=getter, setter=setter, compiled=True)
