"""Result materialization.

Turns rows of a result set into objects of a target type. A ``RowReader``
is planned once per result set (column-to-member map, constructor choice)
and then applied to every row.

Detection order for the target type:

1. custom ``factory(values, columns)``
2. ``dict`` -> ``{column: value}``; ``tuple`` -> value tuple
3. scalar types -> value of the first (or first selected) column
4. composite types -> constructor + member assignment
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Callable, Generic, TypeVar

from rowmap.core.exceptions import ColumnMismatchError, MappingError
from rowmap.mapping.convert import change_type, trim_value
from rowmap.mapping.descriptor import ConstructorInfo, MemberDescriptor, TypeDescriptor
from rowmap.mapping.protocol import DescriptorProvider
from rowmap.mapping.registry import default_registry

T = TypeVar("T")

ValueConverter = Callable[[str, Any, MemberDescriptor, Any], Any]
"""``(column, value, member, item) -> converted value``."""

ItemFactory = Callable[[Sequence[Any], Sequence[str]], Any]
"""``(row values, column names) -> item``."""

ColumnMap = Mapping[str, str] | Iterable[tuple[str, str]]
"""Custom column name -> member name overrides."""


def default_converter(column: str, value: Any, member: MemberDescriptor, item: Any) -> Any:
    """Trim strings, then coerce to the member's declared type."""
    return change_type(trim_value(value), member.declared_type)


def _fold_column_map(column_map: ColumnMap | None) -> dict[str, str]:
    if not column_map:
        return {}
    pairs = column_map.items() if isinstance(column_map, Mapping) else column_map
    return {column.lower(): member for column, member in pairs}


def _plan_default(factory: Callable[[], Any]) -> Callable[[Sequence[Any]], Any]:
    def build_default(values: Sequence[Any]) -> Any:
        return factory()

    return build_default


class RowReader(Generic[T]):
    """Reads rows of one result set into ``T`` instances."""

    def __init__(
        self,
        descriptor: TypeDescriptor,
        columns: Sequence[str],
        *,
        column_map: ColumnMap | None = None,
        selected: Iterable[str] | None = None,
        converter: ValueConverter | None = None,
        factory: ItemFactory | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.columns = list(columns)
        self._converter = converter or default_converter
        self._factory = factory
        self._selected = {c.lower() for c in selected} if selected is not None else None
        self._custom = _fold_column_map(column_map)
        self._read = self._plan()

    def read(self, values: Sequence[Any]) -> T:
        """Materialize one row given as a sequence of column values."""
        return self._read(values)  # type: ignore[no-any-return]

    def read_many(self, rows: Iterable[Sequence[Any]]) -> list[T]:
        return [self._read(values) for values in rows]

    # --- Planning ---

    def _plan(self) -> Callable[[Sequence[Any]], Any]:
        if self._factory is not None:
            factory, columns = self._factory, self.columns
            return lambda values: factory(values, columns)

        cls = self.descriptor.cls
        if cls is dict:
            columns = self.columns
            return lambda values: dict(zip(columns, values, strict=False))
        if self.descriptor.is_tuple:
            return tuple
        if self.descriptor.is_basic or not self.descriptor.members:
            return self._plan_scalar()
        return self._plan_composite()

    def _plan_scalar(self) -> Callable[[Sequence[Any]], Any]:
        index = 0
        if self._selected:
            for i, column in enumerate(self.columns):
                if column.lower() in self._selected:
                    index = i
                    break
        target = self.descriptor.type

        def read_scalar(values: Sequence[Any]) -> Any:
            value = values[index]
            if value is None:
                return None
            return change_type(trim_value(value), target)

        return read_scalar

    def _member_for(self, column: str) -> MemberDescriptor | None:
        descriptor = self.descriptor
        name = self._custom.get(column.lower())
        if name is not None:
            member = descriptor.member(name)
            if member is None:
                raise MappingError(f"Column map targets unknown member {descriptor.name}.{name}")
            return member
        folded = column.lower()
        for member in descriptor.select_members:
            if member.column_name.lower() == folded:
                return member
        for member in descriptor.basic_members:
            if member.name.lower() == folded or member.column_name.lower() == folded:
                return member
        return None

    def _column_members(self) -> dict[int, MemberDescriptor]:
        mapped: dict[int, MemberDescriptor] = {}
        for index, column in enumerate(self.columns):
            if self._selected is not None and column.lower() not in self._selected:
                continue
            member = self._member_for(column)
            if member is not None:
                mapped[index] = member
        return mapped

    def _plan_composite(self) -> Callable[[Sequence[Any]], Any]:
        descriptor = self.descriptor
        mapped = self._column_members()
        converter = self._converter

        if not descriptor.constructors:
            raise MappingError(f"{descriptor.name} has no usable constructor")

        if descriptor.default_factory is not None:
            build, consumed = _plan_default(descriptor.default_factory), set()
        else:
            build, consumed = self._plan_constructor(descriptor.constructors[-1], mapped)

        assignments = [
            (index, self.columns[index], member)
            for index, member in mapped.items()
            if member.name not in consumed and member.setter is not None
        ]

        def read_composite(values: Sequence[Any]) -> Any:
            item = build(values)
            for index, column, member in assignments:
                value = values[index]
                try:
                    if value is None:
                        member.set_value(item, None)
                    else:
                        member.set_value(item, converter(column, value, member, item))
                except MappingError:
                    raise
                except Exception as e:  # noqa: BLE001
                    raise MappingError(
                        f"Cannot assign column '{column}' to {descriptor.name}.{member.name}: {e}"
                    ) from e
            return item

        return read_composite

    def _convert_argument(self, column: str, value: Any, annotation: Any, member: Any) -> Any:
        if value is None:
            return None
        if member is not None:
            return self._converter(column, value, member, None)
        return change_type(trim_value(value), annotation)

    def _plan_constructor(
        self,
        ctor: ConstructorInfo,
        mapped: dict[int, MemberDescriptor],
    ) -> tuple[Callable[[Sequence[Any]], Any], set[str]]:
        """Plan a by-name call if every required parameter has a column.

        Parameter names are matched case-insensitively against mapped member
        names and raw column names. Otherwise arguments are passed
        positionally in declaration order.
        """
        descriptor = self.descriptor
        by_member = {member.name.lower(): index for index, member in mapped.items()}
        by_column = {column.lower(): index for index, column in enumerate(self.columns)}

        named: list[tuple[str, int, Any, MemberDescriptor | None]] = []
        missing: list[str] = []
        for param in ctor.parameters:
            folded = param.name.lower()
            index = by_member.get(folded, by_column.get(folded))
            if index is None:
                if param.required:
                    missing.append(param.name)
                continue
            named.append((param.name, index, param.annotation, descriptor.member(param.name)))

        columns = self.columns
        convert = self._convert_argument
        factory = ctor.factory

        if not missing:

            def build_named(values: Sequence[Any]) -> Any:
                kwargs = {
                    name: convert(columns[index], values[index], annotation, member)
                    for name, index, annotation, member in named
                }
                try:
                    return factory(**kwargs)
                except (TypeError, ValueError) as e:
                    raise MappingError(f"Cannot construct {descriptor.name}: {e}") from e

            return build_named, {name for name, *_ in named}

        positional = [p for p in ctor.parameters if not p.keyword_only]
        count = min(len(positional), len(columns))
        required = sum(1 for p in ctor.parameters if p.required)
        if count < required or any(p.required and p.keyword_only for p in ctor.parameters):
            raise ColumnMismatchError(descriptor.name, missing)

        params = positional[:count]

        def build_positional(values: Sequence[Any]) -> Any:
            args = [
                convert(columns[i], values[i], p.annotation, descriptor.member(p.name))
                for i, p in enumerate(params)
            ]
            try:
                return factory(*args)
            except (TypeError, ValueError) as e:
                raise MappingError(f"Cannot construct {descriptor.name}: {e}") from e

        return build_positional, {p.name for p in params}


class ResultMaterializer:
    """Plans row readers against a descriptor provider.

    Args:
        registry: Descriptor source. Defaults to the process-wide registry.
        converter: Default value converter for readers that do not pass one.
    """

    def __init__(
        self,
        registry: DescriptorProvider | None = None,
        converter: ValueConverter | None = None,
    ) -> None:
        self.registry = registry if registry is not None else default_registry
        self.converter = converter or default_converter

    def reader(
        self,
        target: type[T] | Any,
        columns: Sequence[str],
        *,
        column_map: ColumnMap | None = None,
        selected: Iterable[str] | None = None,
        converter: ValueConverter | None = None,
        factory: ItemFactory | None = None,
    ) -> RowReader[T]:
        """Plan a reader for *target* over a result set with *columns*."""
        return RowReader(
            self.registry.get_or_create(target),
            columns,
            column_map=column_map,
            selected=selected,
            converter=converter or self.converter,
            factory=factory,
        )

    def map_rows(self, target: type[T] | Any, rows: list[dict[str, Any]]) -> list[T]:
        """Materialize already-fetched dict rows."""
        if not rows:
            return []
        columns = list(rows[0].keys())
        reader: RowReader[T] = self.reader(target, columns)
        return reader.read_many([tuple(row.values()) for row in rows])
