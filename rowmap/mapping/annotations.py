"""Declarative mapping annotations and explicit mapping configuration.

Markers are attached to members with ``typing.Annotated``::

    @table("people")
    @dataclass
    class Person:
        id: Annotated[int, Key()] = 0
        name: Annotated[str, Column("full_name")] = ""
        team_id: Annotated[int, ForeignKey("Team")] = 0
        cache: Annotated[str, NotMapped()] = ""

or through dataclass field metadata (``field(metadata={"rowmap": Key()})``).
The same information can be registered without touching the class::

    registry.register(
        Person,
        MappingConfig().table("people").key("id").column("name", "full_name"),
    )

Explicit configuration wins over markers; markers win over naming
heuristics.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from rowmap.core.exceptions import MappingError

T = TypeVar("T")

_TABLE_ATTR = "__rowmap_table__"
_CONFIG_ATTR = "__rowmap_mapping__"


# --- Markers ---


@dataclass(frozen=True)
class Table:
    """Table (and optional schema) a type is stored in."""

    name: str | None = None
    schema: str | None = None


@dataclass(frozen=True)
class Key:
    """Marks a primary-key member."""


@dataclass(frozen=True)
class Column:
    """Marks a member as column-mapped, optionally renaming the column."""

    name: str | None = None


@dataclass(frozen=True)
class ForeignKey:
    """Marks a foreign-key member; *name* names the referenced entity or column."""

    name: str | None = None


@dataclass(frozen=True)
class NotMapped:
    """Excludes a member from every column-mapped set."""


@dataclass(frozen=True)
class Display:
    """Display metadata for UI-facing consumers."""

    name: str | None = None
    description: str | None = None
    group: str | None = None


# --- Explicit configuration ---


@dataclass
class MemberConfig:
    """Mapping facts for one member, merged from markers and explicit calls."""

    key: bool = False
    column: bool = False
    column_name: str | None = None
    foreign_key: bool = False
    foreign_key_name: str | None = None
    not_mapped: bool = False
    display: Display | None = None

    def apply(self, marker: Any) -> None:
        """Fold a single marker into this configuration."""
        if isinstance(marker, Key):
            self.key = True
        elif isinstance(marker, Column):
            if marker.name is not None and not marker.name.strip():
                raise MappingError("Column annotation requires a non-empty name")
            self.column = True
            self.column_name = marker.name or self.column_name
        elif isinstance(marker, ForeignKey):
            self.foreign_key = True
            self.foreign_key_name = marker.name or self.foreign_key_name
        elif isinstance(marker, NotMapped):
            self.not_mapped = True
        elif isinstance(marker, Display):
            self.display = marker

    def merge(self, other: MemberConfig) -> MemberConfig:
        """Return a copy with every fact set on *other* taking precedence."""
        return MemberConfig(
            key=self.key or other.key,
            column=self.column or other.column,
            column_name=other.column_name or self.column_name,
            foreign_key=self.foreign_key or other.foreign_key,
            foreign_key_name=other.foreign_key_name or self.foreign_key_name,
            not_mapped=self.not_mapped or other.not_mapped,
            display=other.display or self.display,
        )


@dataclass
class MappingConfig:
    """Explicit, per-type mapping configuration.

    Every builder method returns ``self`` for chaining.
    """

    table_name: str | None = None
    schema_name: str | None = None
    display: Display | None = None
    members: dict[str, MemberConfig] = field(default_factory=dict)

    def _member(self, name: str) -> MemberConfig:
        if not name:
            raise MappingError("Member name must not be empty")
        return self.members.setdefault(name, MemberConfig())

    def table(self, name: str, schema: str | None = None) -> MappingConfig:
        if not name or not name.strip():
            raise MappingError("Table name must not be empty")
        self.table_name = name
        self.schema_name = schema
        return self

    def key(self, *names: str) -> MappingConfig:
        for name in names:
            self._member(name).key = True
        return self

    def column(self, member: str, name: str | None = None) -> MappingConfig:
        self._member(member).apply(Column(name))
        return self

    def foreign_key(self, member: str, name: str | None = None) -> MappingConfig:
        self._member(member).apply(ForeignKey(name))
        return self

    def not_mapped(self, *names: str) -> MappingConfig:
        for name in names:
            self._member(name).not_mapped = True
        return self

    def describe(
        self,
        member: str | None = None,
        *,
        name: str | None = None,
        description: str | None = None,
        group: str | None = None,
    ) -> MappingConfig:
        """Attach display metadata to the type (``member=None``) or a member."""
        display = Display(name, description, group)
        if member is None:
            self.display = display
        else:
            self._member(member).display = display
        return self

    def merge(self, other: MappingConfig | None) -> MappingConfig:
        """Overlay *other* on top of this configuration."""
        if other is None:
            return self
        members = dict(self.members)
        for name, cfg in other.members.items():
            members[name] = members[name].merge(cfg) if name in members else cfg
        return MappingConfig(
            table_name=other.table_name or self.table_name,
            schema_name=other.schema_name or self.schema_name,
            display=other.display or self.display,
            members=members,
        )


# --- Decorators ---


def table(
    name: str | None = None,
    schema: str | None = None,
    *,
    config: MappingConfig | None = None,
) -> Callable[[type[T]], type[T]]:
    """Class decorator attaching a table name, schema and optional config."""
    if name is not None and not name.strip():
        raise MappingError("Table name must not be empty")

    def decorate(cls: type[T]) -> type[T]:
        setattr(cls, _TABLE_ATTR, Table(name, schema))
        if config is not None:
            setattr(cls, _CONFIG_ATTR, config)
        return cls

    return decorate


def declared_table(cls: type) -> Table | None:
    """The ``Table`` declared directly on *cls* (not inherited)."""
    return vars(cls).get(_TABLE_ATTR)


def declared_config(cls: type) -> MappingConfig | None:
    """The ``MappingConfig`` attached by ``@table(config=...)``, if any."""
    return vars(cls).get(_CONFIG_ATTR)
