"""Command planning shared by the sync and async data clients.

Everything here is free of I/O: the clients ask the planner for a
``Command`` (statement text plus parameters), execute it, and hand the
cursor back to the helpers below to shape the result.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, NamedTuple

from rowmap.core.enums import AggregateFunction
from rowmap.core.exceptions import CommandExecutionError, MappingError
from rowmap.core.params import get_params, placeholder_names, require_params
from rowmap.mapping.convert import change_type
from rowmap.mapping.descriptor import TypeDescriptor
from rowmap.mapping.protocol import DescriptorProvider
from rowmap.sql.predicate import Predicate
from rowmap.sql.protocol import AggSelector, CommandBuilder, OrderBy

_STRING_LITERAL_PATTERN = re.compile(r"'(?:[^']|'')*'")

_AGGS_FUNCTIONS = (
    AggregateFunction.COUNT,
    AggregateFunction.MIN,
    AggregateFunction.MAX,
    AggregateFunction.SUM,
    AggregateFunction.AVG,
)


class Aggs(NamedTuple):
    """All five aggregates of one column."""

    count: int
    min: Any
    max: Any
    sum: Any
    avg: Decimal | None


@dataclass(frozen=True)
class Command:
    """Statement text and parameters for one driver call."""

    method: str
    sql: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InsertCommand(Command):
    """INSERT plus how to obtain the generated key.

    ``returning`` means the INSERT itself yields the key; otherwise
    ``id_sql`` (if set) is run on the same connection right after it.
    ``supplied_id`` carries a key value the caller set explicitly.
    """

    id_sql: str | None = None
    returning: bool = False
    supplied_id: Any = None


@dataclass(frozen=True)
class CommandEvent:
    """Passed to ``command_executed`` and ``command_failed`` hooks."""

    method: str
    sql: str
    params: dict[str, Any]
    elapsed: float


CommandHook = Callable[[CommandEvent], None]
FailureHook = Callable[[CommandEvent, BaseException], None]


def _is_unset(value: Any) -> bool:
    """Key values that mean 'let the database generate it'."""
    if value is None or value == "":
        return True
    return isinstance(value, int) and not isinstance(value, bool) and value == 0


class CommandPlanner:
    """Turns data client calls into ``Command`` objects."""

    def __init__(self, builder: CommandBuilder, registry: DescriptorProvider) -> None:
        self.builder = builder
        self.registry = registry

    def describe(self, tp: Any) -> TypeDescriptor:
        return self.registry.get_or_create(tp)

    def mapped(self, tp: Any, method: str) -> TypeDescriptor:
        """Descriptor of a composite type; scalars and containers are rejected."""
        descriptor = self.registry.get_or_create(tp)
        if not descriptor.is_composite:
            raise MappingError(f"{method} needs a mapped type, got {descriptor.name}")
        return descriptor

    def bind(self, sql: str, params: Any) -> dict[str, Any]:
        """Parameters for a caller-supplied statement.

        Statements with ``:name`` placeholders need a bindable source;
        others accept any shape and fall back to no parameters.
        """
        if placeholder_names(sql):
            return require_params(params, self.registry)
        return get_params(params, self.registry)

    def split(self, sql: str) -> list[str]:
        """Statements of a script, split on the builder's terminator."""
        return split_statements(sql, self.builder.statement_terminator)

    def _item_params(
        self,
        descriptor: TypeDescriptor,
        item: Any,
        columns: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        params = get_params(item, self.registry)
        for member in descriptor.basic_members:
            if member.readable and member.name not in params:
                params[member.name] = member.get_value(item)
        for name in columns or ():
            member = descriptor[name]
            if member.name not in params:
                params[member.name] = member.get_value(item)
        return params

    def _append_where(
        self, sql: str, descriptor: TypeDescriptor, where: Predicate
    ) -> tuple[str, dict[str, Any]]:
        clause, params = self.builder.build_where(descriptor, where)
        return (f"{sql} {clause}" if clause else sql), params

    # --- Statements ---

    def select(
        self,
        tp: Any,
        where: Predicate = None,
        *,
        columns: Sequence[str] | None = None,
        order_by: OrderBy | None = None,
        limit: int = -1,
        offset: int = 0,
        method: str = "to_list",
    ) -> Command:
        descriptor = self.mapped(tp, method)
        sql, params = self._append_where(self.builder.build_select(descriptor, columns), descriptor, where)
        order = self.builder.build_order_by(descriptor, order_by)
        if order:
            sql = f"{sql} {order}"
        sql = self.builder.add_limit_offset(sql, limit, offset, descriptor)
        return Command(method, sql, params)

    def raw(
        self,
        sql: str,
        params: Any = None,
        *,
        limit: int = -1,
        offset: int = 0,
        method: str = "query",
    ) -> Command:
        """Caller-supplied statement; paging does not add an ORDER BY."""
        if not sql or not sql.strip():
            raise ValueError(f"{method} needs a non-empty SQL statement")
        return Command(
            method,
            self.builder.add_limit_offset(sql, limit, offset),
            self.bind(sql, params),
        )

    def insert(self, item: Any, columns: Sequence[str] | None = None) -> InsertCommand:
        descriptor = self.mapped(type(item), "insert")
        keys = descriptor.primary_keys
        if not columns:
            members = [m for m in descriptor.column_members if m.readable and m.writable]
            members += [
                k for k in keys if k not in members and k.readable and not _is_unset(k.get_value(item))
            ]
            columns = [m.name for m in members]
        names = {descriptor[name].name for name in columns}
        sql = self.builder.build_insert(descriptor, columns)
        params = self._item_params(descriptor, item, columns)

        if any(k.name in names for k in keys):
            supplied = keys[0].get_value(item) if len(keys) == 1 else None
            return InsertCommand("insert", sql, params, supplied_id=supplied)
        if len(keys) == 1:
            returning = self.builder.add_returning(sql, descriptor)
            if returning is not None:
                return InsertCommand("insert", returning, params, returning=True)
        return InsertCommand("insert", sql, params, id_sql=self.builder.inserted_id_query)

    def assign_id(self, item: Any, new_id: Any) -> Any:
        """Store a generated key on *item*, converted to the key's type."""
        if new_id is None:
            return None
        descriptor = self.describe(type(item))
        if len(descriptor.primary_keys) != 1:
            return new_id
        key = descriptor.primary_keys[0]
        value = change_type(new_id, key.declared_type)
        if key.setter is not None:
            key.set_value(item, value)
        return value

    def update(
        self,
        item: Any,
        where: Predicate = None,
        columns: Sequence[str] | None = None,
    ) -> Command:
        descriptor = self.mapped(type(item), "update")
        sql = self.builder.build_update(descriptor, columns)
        params = self._item_params(descriptor, item, columns)
        if where is None:
            return Command("update", f"{sql} {self.builder.build_key_where(descriptor)}", params)
        sql, where_params = self._append_where(sql, descriptor, where)
        params.update(where_params)
        return Command("update", sql, params)

    def delete(self, tp: Any, item: Any = None, where: Predicate = None) -> Command:
        descriptor = self.mapped(tp, "delete")
        sql = self.builder.build_delete(descriptor)
        if where is not None:
            sql, params = self._append_where(sql, descriptor, where)
            return Command("delete", sql, params)
        if item is not None:
            return Command(
                "delete",
                f"{sql} {self.builder.build_key_where(descriptor)}",
                self._item_params(descriptor, item),
            )
        return Command("delete", sql)

    # --- Aggregates ---

    def aggregate(
        self,
        tp: Any,
        selectors: Sequence[AggSelector],
        where: Predicate = None,
        method: str = "agg",
    ) -> Command:
        descriptor = self.mapped(tp, method)
        sql, params = self._append_where(self.builder.build_agg(descriptor, selectors), descriptor, where)
        return Command(method, sql, params)

    def aggregate_aliases(self, tp: Any, selectors: Sequence[AggSelector]) -> list[str]:
        """Result column names ``build_agg`` assigns to *selectors*."""
        descriptor = self.describe(tp)
        return [
            f"{descriptor[name].column_name if name is not None else ''}{function.upper()}"
            for name, function in selectors
        ]

    def aggs_selectors(self, columns: Sequence[str]) -> list[AggSelector]:
        return [(name, function.value) for name in columns for function in _AGGS_FUNCTIONS]

    def default_aggs_columns(self, tp: Any) -> list[str]:
        descriptor = self.mapped(tp, "get_aggs")
        return [m.name for m in descriptor.column_members if m.is_numeric]

    def shape_aggs(self, tp: Any, columns: Sequence[str], row: Mapping[str, Any] | None) -> dict[str, Aggs]:
        """Group one aggregate row into an ``Aggs`` tuple per member."""
        descriptor = self.describe(tp)
        folded = {str(k).lower(): v for k, v in (row or {}).items()}
        result: dict[str, Aggs] = {}
        for name in columns:
            member = descriptor[name]
            column = member.column_name.lower()
            values = [folded.get(f"{column}{fn.value.lower()}") for fn in _AGGS_FUNCTIONS]
            count, low, high, total, avg = values
            result[member.name] = Aggs(
                count=int(count or 0),
                min=low,
                max=high,
                sum=total,
                avg=change_type(avg, Decimal) if avg is not None else None,
            )
        return result

    def count_query(self, sql: str, params: Any = None) -> Command:
        return Command("count_query", self.builder.wrap_count(sql), self.bind(sql, params))

    # --- Diagnostics ---

    def raw_sql(self, sql: str, params: Any = None, prefix: str = ":") -> str:
        """Inline *params* into *sql* as literals, longest names first."""
        bound = get_params(params, self.registry)
        for name in sorted(bound, key=len, reverse=True):
            literal = self.builder.to_literal(bound[name])
            pattern = re.compile(rf"(?<![\w:]){re.escape(prefix + name)}(?!\w)")
            sql = pattern.sub(lambda _: literal, sql)
        return sql


def range_failure(method: str, error: Exception) -> CommandExecutionError:
    """Error raised by a range operation after rolling back."""
    if isinstance(error, CommandExecutionError):
        detail = str(error.__cause__) if error.__cause__ is not None else str(error)
        return CommandExecutionError(method, error.sql, error.params, detail)
    return CommandExecutionError(method, None, None, str(error))


# --- Pages ---


def check_page_size(page_size: int) -> None:
    if page_size <= 0:
        raise ValueError(f"page_size must be positive, got {page_size}")


def pages_count(total: int, page_size: int) -> int:
    check_page_size(page_size)
    return -(-total // page_size)


def pages(total: int, page_size: int) -> dict[int, tuple[int, int]]:
    """``{page: (offset, count)}`` for pages numbered from 1."""
    result: dict[int, tuple[int, int]] = {}
    for page in range(1, pages_count(total, page_size) + 1):
        offset = (page - 1) * page_size
        result[page] = (offset, min(page_size, total - offset))
    return result


# --- Results ---


def column_names(cursor: Any) -> list[str]:
    if cursor.description is None:
        return []
    return [desc[0] for desc in cursor.description]


def row_values(row: Any) -> tuple[Any, ...]:
    """Row as a value tuple, for dict rows and tuple-like rows alike."""
    if isinstance(row, Mapping):
        return tuple(row.values())
    return tuple(row)


def first_value(row: Any) -> Any:
    if row is None:
        return None
    if isinstance(row, Mapping):
        return next(iter(row.values()), None)
    return row[0]


def row_dict(columns: Sequence[str], row: Any) -> dict[str, Any] | None:
    if row is None:
        return None
    return dict(zip(columns, row_values(row), strict=False))


def to_pairs(
    rows: Iterable[Sequence[Any]],
    key_type: Any = Any,
    value_type: Any = Any,
) -> dict[Any, Any]:
    """Build a dict from the first two columns of each row."""
    result: dict[Any, Any] = {}
    for values in rows:
        if len(values) < 2:
            raise MappingError("to_dictionary needs rows with at least two columns")
        result[change_type(values[0], key_type)] = change_type(values[1], value_type)
    return result


def split_statements(sql: str, terminator: str = ";") -> list[str]:
    """Split a script on *terminator*, ignoring terminators inside literals."""
    masked = _STRING_LITERAL_PATTERN.sub(lambda m: " " * len(m.group()), sql)
    statements: list[str] = []
    start = 0
    index = masked.find(terminator)
    while index != -1:
        statement = sql[start:index].strip()
        if statement:
            statements.append(statement)
        start = index + len(terminator)
        index = masked.find(terminator, start)
    tail = sql[start:].strip()
    if tail:
        statements.append(tail)
    return statements
