"""Type and member descriptors.

Descriptors are immutable once published by a registry. Derived facts are
memoized with ``cached_property``, which never changes their identity.
"""

from __future__ import annotations

import inspect
import weakref
from dataclasses import dataclass, field
from functools import cached_property
from typing import TYPE_CHECKING, Any, Callable, get_args

from rowmap.core.exceptions import MappingError
from rowmap.mapping import introspect
from rowmap.mapping.annotations import Display
from rowmap.mapping.introspect import MemberKind

if TYPE_CHECKING:
    from rowmap.mapping.protocol import DescriptorProvider


@dataclass(frozen=True)
class ParameterInfo:
    """One constructor parameter."""

    name: str
    annotation: Any
    required: bool
    keyword_only: bool = False


@dataclass(frozen=True)
class ConstructorInfo:
    """A callable that builds instances of a type."""

    factory: Callable[..., Any]
    parameters: tuple[ParameterInfo, ...]

    @property
    def parameter_count(self) -> int:
        return len(self.parameters)

    @property
    def required_count(self) -> int:
        return sum(1 for p in self.parameters if p.required)


@dataclass(frozen=True, eq=False)
class MemberDescriptor:
    """Metadata and accessors for one field or property of a type."""

    name: str
    declared_type: Any
    kind: MemberKind
    column_name: str
    is_primary_key: bool = False
    is_foreign_key: bool = False
    foreign_key_name: str | None = None
    is_not_mapped: bool = False
    has_column_annotation: bool = False
    readable: bool = True
    writable: bool = True
    getter: Callable[[Any], Any] | None = None
    setter: Callable[[Any, Any], None] | None = None
    compiled: bool = True
    display: Display | None = None
    _owner: Any = field(default=None, repr=False)

    @property
    def owner(self) -> TypeDescriptor | None:
        """The owning descriptor (weak back-reference)."""
        return self._owner() if self._owner is not None else None

    @property
    def is_field(self) -> bool:
        return self.kind is MemberKind.FIELD

    @property
    def is_property(self) -> bool:
        return self.kind is MemberKind.PROPERTY

    @cached_property
    def is_basic(self) -> bool:
        return introspect.is_basic(self.declared_type)

    @cached_property
    def is_collection(self) -> bool:
        return introspect.is_collection(self.declared_type)

    @cached_property
    def is_dictionary(self) -> bool:
        return introspect.is_dictionary(self.declared_type)

    @cached_property
    def is_tuple(self) -> bool:
        return introspect.is_tuple(self.declared_type)

    @cached_property
    def is_nullable(self) -> bool:
        return introspect.is_optional(self.declared_type)

    @cached_property
    def is_numeric(self) -> bool:
        return introspect.is_numeric(self.declared_type)

    @cached_property
    def is_boolean(self) -> bool:
        return introspect.is_boolean(self.declared_type)

    @cached_property
    def is_float(self) -> bool:
        return introspect.is_float(self.declared_type)

    @cached_property
    def is_enum(self) -> bool:
        return introspect.is_enum(self.declared_type)

    @property
    def display_name(self) -> str:
        if self.display is not None and self.display.name:
            return self.display.name
        return self.name

    @property
    def description(self) -> str | None:
        return self.display.description if self.display is not None else None

    @property
    def group_name(self) -> str | None:
        return self.display.group if self.display is not None else None

    @cached_property
    def member_type(self) -> TypeDescriptor:
        """Descriptor of the member's own type, looked up through the registry.

        Resolved on first access so that self-referential and mutually
        referential types never recurse during construction.
        """
        owner = self.owner
        if owner is None or owner.registry is None:
            raise MappingError(f"Member '{self.name}' is not attached to a registry")
        return owner.registry.get_or_create(introspect.type_endpoint(self.declared_type))

    @cached_property
    def element_type(self) -> TypeDescriptor | None:
        """Descriptor of the item type for collection members, else None."""
        if not self.is_collection:
            return None
        args = get_args(introspect.type_endpoint(self.declared_type))
        owner = self.owner
        if not args or owner is None or owner.registry is None:
            return None
        return owner.registry.get_or_create(args[0])

    def get_value(self, obj: Any) -> Any:
        if self.getter is None:
            raise MappingError(f"Member '{self.name}' is not readable")
        return self.getter(obj)

    def set_value(self, obj: Any, value: Any) -> None:
        """Assign *value*; read-only properties reject writes with MappingError."""
        if self.setter is None:
            raise MappingError(f"Member '{self.name}' is read-only")
        self.setter(obj, value)


@dataclass(frozen=True, eq=False)
class TypeDescriptor:
    """Fully resolved metadata for one runtime type."""

    type: Any
    cls: Any
    name: str
    table_name: str
    schema_name: str | None = None
    members: tuple[MemberDescriptor, ...] = ()
    primary_keys: tuple[MemberDescriptor, ...] = ()
    foreign_keys: tuple[MemberDescriptor, ...] = ()
    column_members: tuple[MemberDescriptor, ...] = ()
    basic_members: tuple[MemberDescriptor, ...] = ()
    constructors: tuple[ConstructorInfo, ...] = ()
    default_factory: Callable[[], Any] | None = None
    display: Display | None = None
    is_basic: bool = False
    is_collection: bool = False
    is_dictionary: bool = False
    is_tuple: bool = False
    is_nullable: bool = False
    is_numeric: bool = False
    is_boolean: bool = False
    is_float: bool = False
    is_enum: bool = False
    _registry: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        ref = weakref.ref(self)
        for member in self.members:
            object.__setattr__(member, "_owner", ref)

    @property
    def registry(self) -> DescriptorProvider | None:
        return self._registry() if self._registry is not None else None

    @cached_property
    def members_by_name(self) -> dict[str, MemberDescriptor]:
        return {m.name: m for m in self.members}

    @cached_property
    def _members_folded(self) -> dict[str, MemberDescriptor]:
        folded: dict[str, MemberDescriptor] = {}
        for m in self.members:
            folded.setdefault(m.name.lower(), m)
        for m in self.members:
            folded.setdefault(m.column_name.lower(), m)
        return folded

    def member(self, name: str) -> MemberDescriptor | None:
        """Look a member up by name, then case-insensitively by name or column."""
        found = self.members_by_name.get(name)
        if found is not None:
            return found
        return self._members_folded.get(name.lower())

    def __getitem__(self, name: str) -> MemberDescriptor:
        found = self.member(name)
        if found is None:
            raise MappingError(f"{self.name} has no member '{name}'")
        return found

    @property
    def is_composite(self) -> bool:
        return bool(self.members) and not self.is_basic

    @property
    def display_name(self) -> str:
        if self.display is not None and self.display.name:
            return self.display.name
        return self.name

    @property
    def description(self) -> str | None:
        return self.display.description if self.display is not None else None

    @property
    def group_name(self) -> str | None:
        return self.display.group if self.display is not None else None

    @cached_property
    def column_names(self) -> tuple[str, ...]:
        """Columns of every mapped member: column-mapped members then keys."""
        return tuple(m.column_name for m in self.select_members)

    @cached_property
    def select_members(self) -> tuple[MemberDescriptor, ...]:
        """Members a default SELECT reads: column-mapped members, then keys."""
        return self.column_members + tuple(
            m for m in self.primary_keys if m not in self.column_members
        )

    def full_table_name(self, prefix: str = "", suffix: str = "") -> str:
        """Quoted ``schema.table`` (or just ``table``)."""
        table = f"{prefix}{self.table_name}{suffix}"
        if self.schema_name:
            return f"{prefix}{self.schema_name}{suffix}.{table}"
        return table

    def new(self) -> Any:
        """Create an instance through the default constructor."""
        if self.default_factory is None:
            raise MappingError(f"{self.name} has no parameterless constructor")
        return self.default_factory()


def describe_constructors(cls: Any) -> tuple[ConstructorInfo, ...]:
    """Constructors of *cls*, ordered by parameter count."""
    if not inspect.isclass(cls):
        return ()
    try:
        sig = inspect.signature(cls)
    except (ValueError, TypeError):
        return ()
    parameters: list[ParameterInfo] = []
    for param in sig.parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        parameters.append(
            ParameterInfo(
                name=param.name,
                annotation=Any if param.annotation is inspect.Parameter.empty else param.annotation,
                required=param.default is inspect.Parameter.empty,
                keyword_only=param.kind is param.KEYWORD_ONLY,
            )
        )
    constructors = [ConstructorInfo(factory=cls, parameters=tuple(parameters))]
    if parameters and not any(p.required for p in parameters):
        constructors.insert(0, ConstructorInfo(factory=cls, parameters=()))
    return tuple(sorted(constructors, key=lambda c: c.parameter_count))
