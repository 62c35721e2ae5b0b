"""Command builder protocol.

The data client never writes SQL text itself. Every statement is produced by
an object satisfying ``CommandBuilder``; ``SqlCommandBuilder`` is the default
implementation, configured by ``ProviderOptions``.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Optional, Protocol, Union, runtime_checkable

if TYPE_CHECKING:
    from rowmap.mapping.descriptor import TypeDescriptor
    from rowmap.sql.predicate import Predicate

OrderBy = Sequence[Union[str, tuple[str, bool]]]
"""Member names, ``-name`` for descending, or ``(name, ascending)`` pairs."""

AggSelector = tuple[Optional[str], str]
"""``(member name or None for *, aggregate function name)``."""


@runtime_checkable
class CommandBuilder(Protocol):
    """Dialect-aware SQL text generator."""

    @property
    def inserted_id_query(self) -> str | None:
        """Statement returning the last generated identity, if the backend has one."""
        ...

    @property
    def statement_terminator(self) -> str:
        """Separator between statements of a script."""
        ...

    def build_select(self, descriptor: TypeDescriptor, columns: Sequence[str] | None = None) -> str:
        """SELECT of the given members (default: column-mapped members and keys)."""
        ...

    def build_insert(self, descriptor: TypeDescriptor, columns: Sequence[str] | None = None) -> str:
        """INSERT with one ``:member`` placeholder per column."""
        ...

    def build_update(self, descriptor: TypeDescriptor, columns: Sequence[str] | None = None) -> str:
        """UPDATE ... SET without a WHERE clause."""
        ...

    def build_delete(self, descriptor: TypeDescriptor) -> str:
        """DELETE FROM without a WHERE clause."""
        ...

    def build_key_where(self, descriptor: TypeDescriptor) -> str:
        """WHERE clause matching an item by its primary key placeholders."""
        ...

    def build_where(
        self, descriptor: TypeDescriptor, predicate: Predicate
    ) -> tuple[str, dict[str, Any]]:
        """WHERE clause text (empty when there is no predicate) and its parameters."""
        ...

    def build_order_by(self, descriptor: TypeDescriptor, order_by: OrderBy | None) -> str:
        """ORDER BY clause text, empty when *order_by* is empty."""
        ...

    def build_agg(self, descriptor: TypeDescriptor, selectors: Sequence[AggSelector]) -> str:
        """Aggregate SELECT over the descriptor's table."""
        ...

    def add_limit_offset(
        self,
        text: str,
        limit: int,
        offset: int,
        descriptor: TypeDescriptor | None = None,
    ) -> str:
        """Append paging; negative *limit* or *offset* leaves *text* unchanged."""
        ...

    def add_returning(self, text: str, descriptor: TypeDescriptor) -> str | None:
        """INSERT text that also returns the generated key, or None if unsupported."""
        ...

    def wrap_count(self, text: str) -> str:
        """Count the rows an arbitrary SELECT returns."""
        ...

    def to_literal(self, value: Any) -> str:
        """Inline SQL literal for *value*."""
        ...
