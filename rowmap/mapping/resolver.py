"""Mapping resolution.

Derives table name, schema, column names and the primary-key, foreign-key
and column-mapped member sets of a type from its raw members and mapping
configuration. Resolution is a pure function of its inputs.

Primary keys are resolved in this order:

1. members explicitly marked as key
2. a member named ``id`` (case-insensitive)
3. a member named ``{table_name}id`` (case-insensitive)
4. none

Column-mapped members are the scalar, non-key members explicitly marked as
column or foreign key. When no member is marked, every writable scalar
non-key member is column-mapped. Members marked not-mapped never are.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from rowmap.core.exceptions import MappingError
from rowmap.mapping.annotations import (
    Column,
    Display,
    ForeignKey,
    Key,
    MappingConfig,
    MemberConfig,
    NotMapped,
    declared_config,
    declared_table,
)
from rowmap.mapping.introspect import RawMember, is_basic, typename

_MARKERS = (Key, Column, ForeignKey, NotMapped, Display)


@dataclass(frozen=True)
class MemberMapping:
    """Resolved mapping facts for one member."""

    column_name: str
    is_primary_key: bool = False
    is_foreign_key: bool = False
    foreign_key_name: str | None = None
    is_not_mapped: bool = False
    has_column_annotation: bool = False
    display: Display | None = None


@dataclass(frozen=True)
class ResolvedMapping:
    """Result of resolving one type."""

    table_name: str
    schema_name: str | None
    members: dict[str, MemberMapping]
    primary_keys: tuple[str, ...] = ()
    foreign_keys: tuple[str, ...] = ()
    column_members: tuple[str, ...] = ()
    display: Display | None = None
    basic_members: tuple[str, ...] = ()


class MappingResolver:
    """Resolves a type's table/column mapping.

    Args:
        configs: Explicitly registered configurations, keyed by type. They
            take precedence over markers found on the class.
    """

    def __init__(self, configs: dict[Any, MappingConfig] | None = None) -> None:
        self._configs = configs if configs is not None else {}

    def collect(self, cls: Any, members: list[RawMember]) -> MappingConfig:
        """Merge markers, decorator config and registered config for *cls*."""
        scanned = MappingConfig()
        table_decl = declared_table(cls) if isinstance(cls, type) else None
        if table_decl is not None:
            scanned.table_name = table_decl.name
            scanned.schema_name = table_decl.schema

        for member in members:
            for marker in member.markers:
                if isinstance(marker, _MARKERS):
                    scanned.members.setdefault(member.name, MemberConfig()).apply(marker)

        config = scanned
        if isinstance(cls, type):
            config = config.merge(declared_config(cls))
        return config.merge(self._configs.get(cls))

    def resolve(self, cls: Any, members: list[RawMember]) -> ResolvedMapping:
        """Resolve the mapping of *cls* given its raw *members*."""
        config = self.collect(cls, members)
        by_name = {m.name: m for m in members}

        unknown = sorted(set(config.members) - set(by_name))
        if unknown:
            raise MappingError(
                f"Mapping for {typename(cls)} references unknown members {unknown}"
            )

        table_name = config.table_name or getattr(cls, "__name__", typename(cls))
        member_configs = {m.name: config.members.get(m.name, MemberConfig()) for m in members}

        basic = tuple(m.name for m in members if m.readable and is_basic(m.declared_type))
        primary_keys = _resolve_primary_keys(members, member_configs, basic, table_name)

        foreign_keys = tuple(
            m.name
            for m in members
            if member_configs[m.name].foreign_key and not member_configs[m.name].not_mapped
        )

        column_members = tuple(
            name
            for name in basic
            if name not in primary_keys
            and not member_configs[name].not_mapped
            and (member_configs[name].column or member_configs[name].foreign_key)
        )
        if not column_members:
            column_members = tuple(
                name
                for name in basic
                if name not in primary_keys
                and not member_configs[name].not_mapped
                and by_name[name].writable
            )

        mappings = {
            m.name: MemberMapping(
                column_name=member_configs[m.name].column_name or m.name,
                is_primary_key=m.name in primary_keys,
                is_foreign_key=m.name in foreign_keys,
                foreign_key_name=member_configs[m.name].foreign_key_name,
                is_not_mapped=member_configs[m.name].not_mapped,
                has_column_annotation=member_configs[m.name].column,
                display=member_configs[m.name].display,
            )
            for m in members
        }

        return ResolvedMapping(
            table_name=table_name,
            schema_name=config.schema_name,
            members=mappings,
            primary_keys=primary_keys,
            foreign_keys=foreign_keys,
            column_members=column_members,
            display=config.display,
            basic_members=basic,
        )


def _resolve_primary_keys(
    members: list[RawMember],
    configs: dict[str, MemberConfig],
    basic: tuple[str, ...],
    table_name: str,
) -> tuple[str, ...]:
    explicit = tuple(
        m.name for m in members if configs[m.name].key and not configs[m.name].not_mapped
    )
    if explicit:
        return explicit

    candidates = [name for name in basic if not configs[name].not_mapped]
    for name in candidates:
        if name.lower() == "id":
            return (name,)
    # snake_case spellings such as order_id match the table name too
    wanted = f"{table_name}id".replace("_", "").lower()
    for name in candidates:
        if name.replace("_", "").lower() == wanted:
            return (name,)
    return ()
