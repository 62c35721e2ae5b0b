"""Default SQL command builder.

Generates statement text from type descriptors. Placeholders are always
``<param_prefix><member name>`` so parameters bound from an item by
``get_params`` line up with the statement; filter parameters are prefixed
with ``w_`` so they never collide with SET or VALUES placeholders.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from rowmap.core.enums import DatabaseBackend
from rowmap.core.exceptions import MappingError
from rowmap.mapping.descriptor import MemberDescriptor, TypeDescriptor
from rowmap.sql.options import DEFAULT_OPTIONS, ProviderOptions
from rowmap.sql.predicate import Predicate, Where
from rowmap.sql.protocol import AggSelector, OrderBy

_ORDER_BY_PATTERN = re.compile(r"\border\s+by\b", re.IGNORECASE)
_FUNCTION_PATTERN = re.compile(r"^[A-Za-z_]\w*$")

WHERE_PARAM_PREFIX = "w_"


class SqlCommandBuilder:
    """``CommandBuilder`` implementation driven by ``ProviderOptions``."""

    def __init__(self, options: ProviderOptions | None = None) -> None:
        self.options = options or DEFAULT_OPTIONS

    @classmethod
    def for_backend(cls, backend: DatabaseBackend | str) -> SqlCommandBuilder:
        return cls(ProviderOptions.for_backend(backend))

    @property
    def inserted_id_query(self) -> str | None:
        return self.options.inserted_id_query

    @property
    def statement_terminator(self) -> str:
        return self.options.statement_terminator

    # --- Helpers ---

    def _quote(self, name: str) -> str:
        return self.options.quote(name)

    def _param(self, name: str) -> str:
        return f"{self.options.param_prefix}{name}"

    def _table(self, descriptor: TypeDescriptor) -> str:
        return descriptor.full_table_name(self.options.name_prefix, self.options.name_suffix)

    @staticmethod
    def _members(
        descriptor: TypeDescriptor,
        columns: Iterable[str] | None,
        default: Iterable[MemberDescriptor],
    ) -> list[MemberDescriptor]:
        if not columns:
            return list(default)
        return [descriptor[name] for name in columns]

    def _strip(self, text: str) -> str:
        return text.strip().rstrip(self.options.statement_terminator).rstrip()

    # --- Statements ---

    def build_select(self, descriptor: TypeDescriptor, columns: Sequence[str] | None = None) -> str:
        members = self._members(descriptor, columns, descriptor.select_members)
        if not members:
            return f"SELECT * FROM {self._table(descriptor)}"
        names = ", ".join(self._quote(m.column_name) for m in members)
        return f"SELECT {names} FROM {self._table(descriptor)}"

    def build_insert(self, descriptor: TypeDescriptor, columns: Sequence[str] | None = None) -> str:
        members = self._members(
            descriptor,
            columns,
            (m for m in descriptor.column_members if m.readable and m.writable),
        )
        if not members:
            raise MappingError(f"{descriptor.name} has no columns to insert")
        names = ", ".join(self._quote(m.column_name) for m in members)
        values = ", ".join(self._param(m.name) for m in members)
        return f"INSERT INTO {self._table(descriptor)} ({names}) VALUES ({values})"

    def build_update(self, descriptor: TypeDescriptor, columns: Sequence[str] | None = None) -> str:
        members = self._members(
            descriptor,
            columns,
            (m for m in descriptor.column_members if m.readable and m.writable),
        )
        if not members:
            raise MappingError(f"{descriptor.name} has no columns to update")
        assignments = ", ".join(f"{self._quote(m.column_name)} = {self._param(m.name)}" for m in members)
        return f"UPDATE {self._table(descriptor)} SET {assignments}"

    def build_delete(self, descriptor: TypeDescriptor) -> str:
        return f"DELETE FROM {self._table(descriptor)}"

    def build_key_where(self, descriptor: TypeDescriptor) -> str:
        keys = descriptor.primary_keys or descriptor.basic_members
        if not keys:
            raise MappingError(f"{descriptor.name} has no members to identify a row by")
        conditions = " AND ".join(f"{self._quote(m.column_name)} = {self._param(m.name)}" for m in keys)
        return f"WHERE {conditions}"

    def build_where(
        self, descriptor: TypeDescriptor, predicate: Predicate
    ) -> tuple[str, dict[str, Any]]:
        if predicate is None:
            return "", {}
        if isinstance(predicate, Where):
            return f"WHERE {predicate.text}", dict(predicate.params)
        if not isinstance(predicate, Mapping):
            raise MappingError(f"Unsupported filter type {type(predicate).__name__}")
        if not predicate:
            return "", {}

        conditions: list[str] = []
        params: dict[str, Any] = {}
        for name, value in predicate.items():
            member = descriptor[name]
            column = self._quote(member.column_name)
            param = f"{WHERE_PARAM_PREFIX}{member.name}"
            if value is None:
                conditions.append(f"{column} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                if not value:
                    conditions.append("1 = 0")
                    continue
                placeholders = []
                for i, item in enumerate(value):
                    params[f"{param}_{i}"] = item
                    placeholders.append(self._param(f"{param}_{i}"))
                conditions.append(f"{column} IN ({', '.join(placeholders)})")
            else:
                params[param] = value
                conditions.append(f"{column} = {self._param(param)}")
        return "WHERE " + " AND ".join(conditions), params

    def build_order_by(self, descriptor: TypeDescriptor, order_by: OrderBy | None) -> str:
        if not order_by:
            return ""
        if isinstance(order_by, str):
            order_by = [order_by]
        parts: list[str] = []
        for entry in order_by:
            if isinstance(entry, tuple):
                name, ascending = entry
            elif entry.startswith("-"):
                name, ascending = entry[1:], False
            else:
                name, ascending = entry, True
            member = descriptor[name]
            parts.append(f"{self._quote(member.column_name)} {'ASC' if ascending else 'DESC'}")
        return "ORDER BY " + ", ".join(parts)

    def build_agg(self, descriptor: TypeDescriptor, selectors: Sequence[AggSelector]) -> str:
        table = self._table(descriptor)
        if not selectors:
            return f"SELECT COUNT(*) FROM {table}"
        parts: list[str] = []
        for name, function in selectors:
            function = function.upper()
            if not _FUNCTION_PATTERN.match(function):
                raise MappingError(f"Invalid aggregate function '{function}'")
            if name is None:
                parts.append(f"{function}(*) AS {self._quote(function)}")
                continue
            column = descriptor[name].column_name
            parts.append(f"{function}({self._quote(column)}) AS {self._quote(column + function)}")
        return f"SELECT {', '.join(parts)} FROM {table}"

    def add_limit_offset(
        self,
        text: str,
        limit: int,
        offset: int,
        descriptor: TypeDescriptor | None = None,
    ) -> str:
        if limit < 0 or offset < 0:
            return text
        text = self._strip(text)
        if descriptor is not None and not _ORDER_BY_PATTERN.search(text):
            keys = descriptor.primary_keys or descriptor.column_members
            if keys:
                text += " ORDER BY " + ", ".join(f"{self._quote(m.column_name)} ASC" for m in keys)
        return f"{text} {self.options.limit_offset_template.format(limit=limit, offset=offset)}"

    def add_returning(self, text: str, descriptor: TypeDescriptor) -> str | None:
        if not self.options.insert_returning or len(descriptor.primary_keys) != 1:
            return None
        key = descriptor.primary_keys[0]
        return f"{self._strip(text)} RETURNING {self._quote(key.column_name)}"

    def wrap_count(self, text: str) -> str:
        return f"SELECT COUNT(*) FROM ({self._strip(text)}) CountTable"

    def to_literal(self, value: Any) -> str:
        return self.options.to_literal(value)
