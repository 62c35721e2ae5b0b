"""Data clients.

``DataClient`` and ``AsyncDataClient`` expose the same operations: CRUD on
mapped types, queries materialized into objects, aggregates, paging and
explicit transactions. SQL text comes from a ``CommandBuilder``; rows are
turned into objects by a ``ResultMaterializer``.

Each client owns one driver connection. It is opened at the start of an
operation and closed at its end, unless a transaction is active or
``ConnectionConfig.keep_open`` is set.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Iterable, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from rowmap.core.commands import (
    Aggs,
    Command,
    CommandEvent,
    CommandHook,
    CommandPlanner,
    FailureHook,
    InsertCommand,
    check_page_size,
    column_names,
    first_value,
    pages,
    pages_count,
    range_failure,
    row_dict,
    row_values,
    to_pairs,
)
from rowmap.core.connection import AsyncConnectionManager, ConnectionConfig, ConnectionManager
from rowmap.core.exceptions import (  # noqa: A004
    CommandExecutionError,
    ConnectionError,
    TransactionStateError,
)
from rowmap.core.params import coerce_params, normalize_params, referenced_params
from rowmap.core.transaction import AsyncTransaction, Transaction
from rowmap.mapping.convert import change_type
from rowmap.mapping.materializer import ColumnMap, ItemFactory, ResultMaterializer, ValueConverter
from rowmap.mapping.protocol import DescriptorProvider
from rowmap.mapping.registry import default_registry
from rowmap.sql.builder import SqlCommandBuilder
from rowmap.sql.predicate import Predicate
from rowmap.sql.protocol import AggSelector, CommandBuilder, OrderBy

if TYPE_CHECKING:
    import pandas as pd

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _selected(planner: CommandPlanner, tp: Any, columns: Sequence[str] | None) -> list[str] | None:
    """Column names to read from a caller-supplied statement."""
    if columns is None:
        return None
    descriptor = planner.describe(tp)
    if not descriptor.is_composite:
        return list(columns)
    return [descriptor[name].column_name for name in columns]


def _check_cancelled(cancellation: asyncio.Event | None) -> None:
    if cancellation is not None and cancellation.is_set():
        raise asyncio.CancelledError()


def _data_frame(columns: list[str], rows: list[tuple[Any, ...]]) -> pd.DataFrame:
    import pandas as pd

    return pd.DataFrame(rows, columns=columns)


class _ClientBase:
    """State and planning shared by both clients."""

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        builder: CommandBuilder | None = None,
        registry: DescriptorProvider | None = None,
        converter: ValueConverter | None = None,
    ) -> None:
        self.config = config
        self.registry = registry if registry is not None else default_registry
        self.builder = builder if builder is not None else SqlCommandBuilder.for_backend(config.driver)
        self.materializer = ResultMaterializer(self.registry, converter)
        self._planner = CommandPlanner(self.builder, self.registry)
        self.command_executed: list[CommandHook] = []
        self.command_failed: list[FailureHook] = []

    def _prepare(self, command: Command, paramstyle: str) -> tuple[str, dict[str, Any]]:
        params = coerce_params(referenced_params(command.sql, command.params))
        logger.debug("%s: %s | %s", command.method, command.sql, params)
        return normalize_params(command.sql, paramstyle), params

    def _executed(self, command: Command, params: dict[str, Any], started: float) -> None:
        event = CommandEvent(command.method, command.sql, params, time.perf_counter() - started)
        for hook in self.command_executed:
            hook(event)

    def _failed(
        self, command: Command, params: dict[str, Any], started: float, error: Exception
    ) -> CommandExecutionError:
        event = CommandEvent(command.method, command.sql, params, time.perf_counter() - started)
        for hook in self.command_failed:
            hook(event, error)
        return CommandExecutionError(command.method, command.sql, params, str(error))

    def get_raw_sql(self, sql: str, params: Any = None) -> str:
        """Render *sql* with parameters inlined as literals, for diagnostics."""
        return self._planner.raw_sql(sql, params)


class DataClient(_ClientBase):
    """Synchronous data client.

    Args:
        config: Connection settings; ``driver`` also picks the SQL dialect.
        builder: Command builder. Defaults to ``SqlCommandBuilder`` for the driver.
        registry: Descriptor provider. Defaults to the process-wide registry.
        converter: Value converter used when materializing rows.
        adapter: Driver adapter override, mainly for tests.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        builder: CommandBuilder | None = None,
        registry: DescriptorProvider | None = None,
        converter: ValueConverter | None = None,
        adapter: Any | None = None,
    ) -> None:
        super().__init__(config, builder=builder, registry=registry, converter=converter)
        self._connections = ConnectionManager(config, adapter)
        self._transaction: Transaction | None = None

    def __enter__(self) -> DataClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def transaction(self) -> Transaction | None:
        """The active transaction, if any."""
        return self._transaction

    def close(self) -> None:
        """Roll back an active transaction and close the connection."""
        if self._transaction is not None:
            logger.warning("Closing client with an active transaction; rolling back")
            self._rollback_quietly(self._transaction, "close")
        self._connections.close()

    # --- Connection and execution ---

    def _resolve(self, transaction: Transaction | None) -> Transaction | None:
        if transaction is not None:
            if not transaction.is_active:
                raise TransactionStateError(transaction.state, "execute")
            return transaction
        return self._transaction

    def _release(self) -> None:
        if self._transaction is None and not self.config.keep_open:
            self._connections.close()

    def _release_quietly(self) -> None:
        try:
            self._release()
        except ConnectionError:
            logger.warning("Closing the connection after a failed command did not succeed", exc_info=True)

    @contextmanager
    def _session(self, transaction: Transaction | None) -> Iterator[tuple[Any, Transaction | None]]:
        tx = self._resolve(transaction)
        if tx is not None:
            yield tx.connection, tx
            return
        connection = self._connections.open()
        try:
            yield connection, None
        except BaseException:
            self._release_quietly()
            raise
        self._release()

    def _execute(self, connection: Any, command: Command) -> Any:
        sql, params = self._prepare(command, self._connections.adapter.paramstyle)
        started = time.perf_counter()
        try:
            cursor = self._connections.adapter.execute(connection, sql, params)
        except Exception as e:
            raise self._failed(command, params, started, e) from e
        self._executed(command, params, started)
        return cursor

    def _run(
        self,
        command: Command,
        transaction: Transaction | None,
        consume: Callable[[Any, Any], T],
    ) -> T:
        """Execute *command* and shape its cursor with *consume*.

        Outside a transaction the work is committed on success and rolled
        back on failure.
        """
        with self._session(transaction) as (connection, tx):
            try:
                result = consume(connection, self._execute(connection, command))
            except Exception:
                if tx is None:
                    self._rollback_connection(connection, command.method)
                raise
            if tx is None:
                self._commit(connection, command)
            return result

    def _commit(self, connection: Any, command: Command) -> None:
        try:
            connection.commit()
        except Exception as e:
            self._rollback_connection(connection, command.method)
            raise CommandExecutionError(
                command.method, command.sql, command.params, f"commit failed: {e}"
            ) from e

    def _rollback_connection(self, connection: Any, method: str) -> None:
        try:
            connection.rollback()
        except Exception:
            logger.warning("Rollback after failed %s did not succeed", method, exc_info=True)

    def _rollback_quietly(self, transaction: Transaction, method: str) -> None:
        if not transaction.is_active:
            return
        try:
            transaction.rollback()
        except Exception:
            logger.warning("Rollback of transaction during %s failed", method, exc_info=True)

    def _fetch(self, command: Command, cursor: Any) -> Any:
        try:
            return cursor.fetchone()
        except Exception as e:
            raise CommandExecutionError(command.method, command.sql, command.params, str(e)) from e

    def _read_items(
        self,
        command: Command,
        cursor: Any,
        tp: Any,
        *,
        selected: Iterable[str] | None = None,
        column_map: ColumnMap | None = None,
        converter: ValueConverter | None = None,
        factory: ItemFactory | None = None,
        limit: int = -1,
    ) -> list[Any]:
        columns = column_names(cursor)
        if not columns:
            return []
        reader = self.materializer.reader(
            tp, columns, column_map=column_map, selected=selected, converter=converter, factory=factory
        )
        items: list[Any] = []
        while limit < 0 or len(items) < limit:
            row = self._fetch(command, cursor)
            if row is None:
                break
            items.append(reader.read(row_values(row)))
        return items

    def _read_table(self, command: Command, cursor: Any) -> tuple[list[str], list[tuple[Any, ...]]]:
        columns = column_names(cursor)
        rows: list[tuple[Any, ...]] = []
        if not columns:
            return columns, rows
        while True:
            row = self._fetch(command, cursor)
            if row is None:
                return columns, rows
            rows.append(row_values(row))

    def _scalar(self, command: Command, transaction: Transaction | None) -> Any:
        return self._run(command, transaction, lambda _, cursor: first_value(self._fetch(command, cursor)))

    # --- Transactions ---

    def begin_transaction(self) -> Transaction:
        """Start a transaction on the client's connection.

        Raises:
            TransactionStateError: If a transaction is already active.
        """
        if self._transaction is not None:
            raise TransactionStateError("active", "begin")
        connection = self._connections.open()
        self._transaction = Transaction(connection, on_finish=self._transaction_finished)
        return self._transaction

    def end_transaction(self, transaction: Transaction | None = None) -> None:
        """Commit *transaction* (default: the active one)."""
        tx = transaction or self._transaction
        if tx is None:
            raise TransactionStateError("idle", "end")
        try:
            tx.commit()
        except TransactionStateError:
            raise
        except Exception as e:
            raise CommandExecutionError("end_transaction", None, None, str(e)) from e

    def rollback_transaction(self, transaction: Transaction | None = None) -> None:
        """Roll back *transaction* (default: the active one)."""
        tx = transaction or self._transaction
        if tx is None:
            raise TransactionStateError("idle", "rollback")
        try:
            tx.rollback()
        except TransactionStateError:
            raise
        except Exception as e:
            raise CommandExecutionError("rollback_transaction", None, None, str(e)) from e

    def _transaction_finished(self, transaction: Transaction) -> None:
        if self._transaction is transaction:
            self._transaction = None
            self._release()

    # --- Writes ---

    def insert(
        self,
        item: Any,
        columns: Sequence[str] | None = None,
        *,
        transaction: Transaction | None = None,
    ) -> Any:
        """Insert *item* and return its generated key (or None).

        A single primary key is assigned on the item, converted to its
        declared type.
        """
        command = self._planner.insert(item, columns)

        def consume(connection: Any, cursor: Any) -> Any:
            return self._inserted_id(connection, command, cursor)

        return self._planner.assign_id(item, self._run(command, transaction, consume))

    def _inserted_id(self, connection: Any, command: InsertCommand, cursor: Any) -> Any:
        if command.returning:
            return first_value(self._fetch(command, cursor))
        if command.id_sql:
            id_command = Command("insert", command.id_sql)
            return first_value(self._fetch(id_command, self._execute(connection, id_command)))
        return command.supplied_id

    def create(self, tp: type[T], *, transaction: Transaction | None = None, **values: Any) -> T:
        """Build a ``tp`` from *values*, insert it and return it."""
        descriptor = self._planner.mapped(tp, "create")
        if descriptor.default_factory is not None:
            item = descriptor.new()
            for name, value in values.items():
                descriptor[name].set_value(item, value)
        else:
            item = tp(**values)
        self.insert(item, transaction=transaction)
        return item

    def update(
        self,
        item: Any,
        where: Predicate = None,
        columns: Sequence[str] | None = None,
        *,
        transaction: Transaction | None = None,
    ) -> int:
        """Update *item* by primary key, or the rows *where* selects."""
        command = self._planner.update(item, where, columns)
        return self._run(command, transaction, lambda _, cursor: int(cursor.rowcount))

    def delete(
        self,
        item: Any = None,
        *,
        where: Predicate = None,
        tp: Any = None,
        transaction: Transaction | None = None,
    ) -> int:
        """Delete *item* by primary key, or the ``tp`` rows *where* selects."""
        target = tp if tp is not None else type(item) if item is not None else None
        if target is None:
            raise ValueError("delete needs an item or a type")
        command = self._planner.delete(target, item, where)
        return self._run(command, transaction, lambda _, cursor: int(cursor.rowcount))

    def _range(
        self,
        method: str,
        items: Iterable[Any],
        transaction: Transaction | None,
        action: Callable[[Any, Transaction], int],
    ) -> int:
        tx = self._resolve(transaction)
        owned = tx is None
        if tx is None:
            tx = self.begin_transaction()
        total = 0
        try:
            for item in items:
                total += action(item, tx)
            if owned:
                self.end_transaction(tx)
        except Exception as e:
            self._rollback_quietly(tx, method)
            raise range_failure(method, e) from e
        return total

    def insert_range(
        self,
        items: Iterable[Any],
        columns: Sequence[str] | None = None,
        *,
        transaction: Transaction | None = None,
    ) -> int:
        """Insert every item in one transaction; returns the number inserted."""

        def insert_one(item: Any, tx: Transaction) -> int:
            self.insert(item, columns, transaction=tx)
            return 1

        return self._range("insert_range", items, transaction, insert_one)

    def update_range(
        self,
        items: Iterable[Any],
        columns: Sequence[str] | None = None,
        *,
        transaction: Transaction | None = None,
    ) -> int:
        """Update every item in one transaction; returns total affected rows."""
        return self._range(
            "update_range",
            items,
            transaction,
            lambda item, tx: self.update(item, columns=columns, transaction=tx),
        )

    def delete_range(self, items: Iterable[Any], *, transaction: Transaction | None = None) -> int:
        """Delete every item in one transaction; returns total affected rows."""
        return self._range(
            "delete_range", items, transaction, lambda item, tx: self.delete(item, transaction=tx)
        )

    def execute_non_query(
        self, sql: str, params: Any = None, *, transaction: Transaction | None = None
    ) -> int:
        """Run a statement and return the affected row count."""
        command = self._planner.raw(sql, params, method="execute_non_query")
        return self._run(command, transaction, lambda _, cursor: int(cursor.rowcount))

    def execute_scalar(self, sql: str, params: Any = None, *, transaction: Transaction | None = None) -> Any:
        """Run a statement and return the first column of its first row."""
        return self._scalar(self._planner.raw(sql, params, method="execute_scalar"), transaction)

    # --- Queries ---

    def query(
        self,
        tp: type[T] | Any,
        sql: str | None = None,
        params: Any = None,
        *,
        columns: Sequence[str] | None = None,
        column_map: ColumnMap | None = None,
        converter: ValueConverter | None = None,
        fetch_rows: int = -1,
        offset_rows: int = 0,
        factory: ItemFactory | None = None,
        collection: Callable[[list[Any]], Any] = list,
        transaction: Transaction | None = None,
    ) -> Any:
        """Materialize the rows of *sql* (default: a SELECT of ``tp``) as ``tp``.

        Reading stops once *fetch_rows* items were produced.
        """
        if sql is None:
            command = self._planner.select(
                tp, columns=columns, limit=fetch_rows, offset=offset_rows, method="query"
            )
            selected = None
        else:
            command = self._planner.raw(sql, params, limit=fetch_rows, offset=offset_rows)
            selected = _selected(self._planner, tp, columns)

        def consume(_: Any, cursor: Any) -> list[Any]:
            return self._read_items(
                command,
                cursor,
                tp,
                selected=selected,
                column_map=column_map,
                converter=converter,
                factory=factory,
                limit=fetch_rows,
            )

        return collection(self._run(command, transaction, consume))

    def to_list(
        self,
        tp: type[T],
        where: Predicate = None,
        *,
        columns: Sequence[str] | None = None,
        order_by: OrderBy | None = None,
        column_map: ColumnMap | None = None,
        converter: ValueConverter | None = None,
        fetch_rows: int = -1,
        offset_rows: int = 0,
        factory: ItemFactory | None = None,
        transaction: Transaction | None = None,
    ) -> list[T]:
        """Rows of ``tp``'s table matching *where*, as ``tp`` instances."""
        command = self._planner.select(
            tp, where, columns=columns, order_by=order_by, limit=fetch_rows, offset=offset_rows
        )

        def consume(_: Any, cursor: Any) -> list[Any]:
            return self._read_items(
                command,
                cursor,
                tp,
                column_map=column_map,
                converter=converter,
                factory=factory,
                limit=fetch_rows,
            )

        return self._run(command, transaction, consume)

    def first(
        self,
        tp: type[T],
        where: Predicate = None,
        *,
        order_by: OrderBy | None = None,
        columns: Sequence[str] | None = None,
        column_map: ColumnMap | None = None,
        converter: ValueConverter | None = None,
        transaction: Transaction | None = None,
    ) -> T | None:
        """First matching ``tp`` row, or None."""
        items = self.to_list(
            tp,
            where,
            columns=columns,
            order_by=order_by,
            column_map=column_map,
            converter=converter,
            fetch_rows=1,
            transaction=transaction,
        )
        return items[0] if items else None

    def to_dictionary(
        self,
        sql: str | None = None,
        params: Any = None,
        *,
        tp: Any = None,
        key: str | None = None,
        value: str | None = None,
        where: Predicate = None,
        key_type: Any = Any,
        value_type: Any = Any,
        transaction: Transaction | None = None,
    ) -> dict[Any, Any]:
        """Dict of the first two columns of *sql*, or of ``tp``'s *key*/*value* members."""
        if tp is not None:
            if key is None or value is None:
                raise ValueError("to_dictionary with a type needs key and value members")
            descriptor = self._planner.mapped(tp, "to_dictionary")
            key_type = descriptor[key].declared_type if key_type is Any else key_type
            value_type = descriptor[value].declared_type if value_type is Any else value_type
            command = self._planner.select(tp, where, columns=[key, value], method="to_dictionary")
        elif sql is not None:
            command = self._planner.raw(sql, params, method="to_dictionary")
        else:
            raise ValueError("to_dictionary needs a statement or a type")
        _, rows = self._run(command, transaction, lambda _, cursor: self._read_table(command, cursor))
        return to_pairs(rows, key_type, value_type)

    def to_data_table(
        self,
        sql: str | None = None,
        params: Any = None,
        *,
        tp: Any = None,
        where: Predicate = None,
        columns: Sequence[str] | None = None,
        order_by: OrderBy | None = None,
        transaction: Transaction | None = None,
    ) -> pd.DataFrame:
        """Result set as a ``pandas.DataFrame``."""
        if tp is not None:
            command = self._planner.select(
                tp, where, columns=columns, order_by=order_by, method="to_data_table"
            )
        elif sql is not None:
            command = self._planner.raw(sql, params, method="to_data_table")
        else:
            raise ValueError("to_data_table needs a statement or a type")
        names, rows = self._run(command, transaction, lambda _, cursor: self._read_table(command, cursor))
        return _data_frame(names, rows)

    def to_data_tables(
        self, sql: str, params: Any = None, *, transaction: Transaction | None = None
    ) -> list[pd.DataFrame]:
        """One DataFrame per statement of a ``;``-separated script."""
        return [
            self.to_data_table(statement, params, transaction=transaction)
            for statement in self._planner.split(sql)
        ]

    # --- Aggregates ---

    def count(
        self,
        tp: Any,
        column: str | None = None,
        where: Predicate = None,
        *,
        transaction: Transaction | None = None,
    ) -> int:
        """Number of rows (or non-null *column* values) matching *where*."""
        selectors: list[AggSelector] = [(column, "COUNT")] if column else []
        value = self._scalar(self._planner.aggregate(tp, selectors, where, "count"), transaction)
        return int(value or 0)

    def _aggregate_one(
        self,
        method: str,
        tp: Any,
        column: str,
        where: Predicate,
        transaction: Transaction | None,
    ) -> Any:
        command = self._planner.aggregate(tp, [(column, method.upper())], where, method)
        return self._scalar(command, transaction)

    def sum(
        self, tp: Any, column: str, where: Predicate = None, *, transaction: Transaction | None = None
    ) -> Any:
        return self._aggregate_one("sum", tp, column, where, transaction)

    def min(
        self, tp: Any, column: str, where: Predicate = None, *, transaction: Transaction | None = None
    ) -> Any:
        value = self._aggregate_one("min", tp, column, where, transaction)
        return change_type(value, self._planner.describe(tp)[column].declared_type)

    def max(
        self, tp: Any, column: str, where: Predicate = None, *, transaction: Transaction | None = None
    ) -> Any:
        value = self._aggregate_one("max", tp, column, where, transaction)
        return change_type(value, self._planner.describe(tp)[column].declared_type)

    def avg(
        self, tp: Any, column: str, where: Predicate = None, *, transaction: Transaction | None = None
    ) -> Any:
        return self._aggregate_one("avg", tp, column, where, transaction)

    def agg(
        self,
        tp: Any,
        *selectors: AggSelector,
        where: Predicate = None,
        transaction: Transaction | None = None,
    ) -> dict[str, Any]:
        """Several aggregates in one query, keyed ``{column}{FUNCTION}``."""
        command = self._planner.aggregate(tp, selectors, where, "agg")
        row = self._run(
            command,
            transaction,
            lambda _, cursor: row_dict(column_names(cursor), self._fetch(command, cursor)),
        )
        folded = {str(k).lower(): v for k, v in (row or {}).items()}
        return {alias: folded.get(alias.lower()) for alias in self._planner.aggregate_aliases(tp, selectors)}

    def get_aggs(
        self,
        tp: Any,
        *columns: str,
        where: Predicate = None,
        transaction: Transaction | None = None,
    ) -> dict[str, Aggs]:
        """COUNT, MIN, MAX, SUM and AVG of each column in one round trip.

        Without *columns*, every numeric column-mapped member is used.
        """
        names = list(columns) or self._planner.default_aggs_columns(tp)
        if not names:
            return {}
        command = self._planner.aggregate(tp, self._planner.aggs_selectors(names), where, "get_aggs")
        row = self._run(
            command,
            transaction,
            lambda _, cursor: row_dict(column_names(cursor), self._fetch(command, cursor)),
        )
        return self._planner.shape_aggs(tp, names, row)

    def count_query(self, sql: str, params: Any = None, *, transaction: Transaction | None = None) -> int:
        """Number of rows an arbitrary SELECT returns."""
        return int(self._scalar(self._planner.count_query(sql, params), transaction) or 0)

    # --- Pages ---

    def get_pages_count(
        self,
        tp: Any,
        page_size: int,
        where: Predicate = None,
        *,
        transaction: Transaction | None = None,
    ) -> int:
        check_page_size(page_size)
        return pages_count(self.count(tp, where=where, transaction=transaction), page_size)

    def get_pages(
        self,
        tp: Any,
        page_size: int,
        where: Predicate = None,
        *,
        transaction: Transaction | None = None,
    ) -> dict[int, tuple[int, int]]:
        """``{page: (offset, count)}`` over ``tp``'s rows, pages numbered from 1."""
        check_page_size(page_size)
        return pages(self.count(tp, where=where, transaction=transaction), page_size)


class AsyncDataClient(_ClientBase):
    """Asynchronous data client.

    Mirrors ``DataClient``. Every operation also accepts a ``cancellation``
    event, checked before each command and before each row read; once set,
    the operation raises ``asyncio.CancelledError``.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        builder: CommandBuilder | None = None,
        registry: DescriptorProvider | None = None,
        converter: ValueConverter | None = None,
        adapter: Any | None = None,
    ) -> None:
        super().__init__(config, builder=builder, registry=registry, converter=converter)
        self._connections = AsyncConnectionManager(config, adapter)
        self._transaction: AsyncTransaction | None = None

    async def __aenter__(self) -> AsyncDataClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def transaction(self) -> AsyncTransaction | None:
        """The active transaction, if any."""
        return self._transaction

    async def close(self) -> None:
        """Roll back an active transaction and close the connection."""
        if self._transaction is not None:
            logger.warning("Closing client with an active transaction; rolling back")
            await self._rollback_quietly(self._transaction, "close")
        await self._connections.close()

    # --- Connection and execution ---

    def _resolve(self, transaction: AsyncTransaction | None) -> AsyncTransaction | None:
        if transaction is not None:
            if not transaction.is_active:
                raise TransactionStateError(transaction.state, "execute")
            return transaction
        return self._transaction

    async def _release(self) -> None:
        if self._transaction is None and not self.config.keep_open:
            await self._connections.close()

    async def _release_quietly(self) -> None:
        try:
            await self._release()
        except ConnectionError:
            logger.warning("Closing the connection after a failed command did not succeed", exc_info=True)

    @asynccontextmanager
    async def _session(
        self, transaction: AsyncTransaction | None
    ) -> AsyncIterator[tuple[Any, AsyncTransaction | None]]:
        tx = self._resolve(transaction)
        if tx is not None:
            yield tx.connection, tx
            return
        connection = await self._connections.open()
        try:
            yield connection, None
        except BaseException:
            await self._release_quietly()
            raise
        await self._release()

    async def _execute(
        self, connection: Any, command: Command, cancellation: asyncio.Event | None
    ) -> Any:
        _check_cancelled(cancellation)
        sql, params = self._prepare(command, self._connections.adapter.paramstyle)
        started = time.perf_counter()
        try:
            cursor = await self._connections.adapter.execute_async(connection, sql, params)
        except Exception as e:
            raise self._failed(command, params, started, e) from e
        self._executed(command, params, started)
        return cursor

    async def _run(
        self,
        command: Command,
        transaction: AsyncTransaction | None,
        consume: Callable[[Any, Any], Any],
        cancellation: asyncio.Event | None,
    ) -> Any:
        """Execute *command* and shape its cursor with the coroutine *consume*.

        Outside a transaction the work is committed on success and rolled
        back on failure, cancellation included.
        """
        async with self._session(transaction) as (connection, tx):
            try:
                cursor = await self._execute(connection, command, cancellation)
                result = await consume(connection, cursor)
            except BaseException:
                if tx is None:
                    await self._rollback_connection(connection, command.method)
                raise
            if tx is None:
                await self._commit(connection, command)
            return result

    async def _commit(self, connection: Any, command: Command) -> None:
        try:
            await connection.commit()
        except Exception as e:
            await self._rollback_connection(connection, command.method)
            raise CommandExecutionError(
                command.method, command.sql, command.params, f"commit failed: {e}"
            ) from e

    async def _rollback_connection(self, connection: Any, method: str) -> None:
        try:
            await connection.rollback()
        except Exception:
            logger.warning("Rollback after failed %s did not succeed", method, exc_info=True)

    async def _rollback_quietly(self, transaction: AsyncTransaction, method: str) -> None:
        if not transaction.is_active:
            return
        try:
            await transaction.rollback()
        except Exception:
            logger.warning("Rollback of transaction during %s failed", method, exc_info=True)

    async def _fetch(self, command: Command, cursor: Any, cancellation: asyncio.Event | None) -> Any:
        _check_cancelled(cancellation)
        try:
            return await cursor.fetchone()
        except Exception as e:
            raise CommandExecutionError(command.method, command.sql, command.params, str(e)) from e

    async def _read_items(
        self,
        command: Command,
        cursor: Any,
        tp: Any,
        cancellation: asyncio.Event | None,
        *,
        selected: Iterable[str] | None = None,
        column_map: ColumnMap | None = None,
        converter: ValueConverter | None = None,
        factory: ItemFactory | None = None,
        limit: int = -1,
    ) -> list[Any]:
        columns = column_names(cursor)
        if not columns:
            return []
        reader = self.materializer.reader(
            tp, columns, column_map=column_map, selected=selected, converter=converter, factory=factory
        )
        items: list[Any] = []
        while limit < 0 or len(items) < limit:
            row = await self._fetch(command, cursor, cancellation)
            if row is None:
                break
            items.append(reader.read(row_values(row)))
        return items

    async def _read_table(
        self, command: Command, cursor: Any, cancellation: asyncio.Event | None
    ) -> tuple[list[str], list[tuple[Any, ...]]]:
        columns = column_names(cursor)
        rows: list[tuple[Any, ...]] = []
        if not columns:
            return columns, rows
        while True:
            row = await self._fetch(command, cursor, cancellation)
            if row is None:
                return columns, rows
            rows.append(row_values(row))

    async def _read_row(
        self, command: Command, cursor: Any, cancellation: asyncio.Event | None
    ) -> dict[str, Any] | None:
        return row_dict(column_names(cursor), await self._fetch(command, cursor, cancellation))

    async def _scalar(
        self,
        command: Command,
        transaction: AsyncTransaction | None,
        cancellation: asyncio.Event | None,
    ) -> Any:
        async def consume(_: Any, cursor: Any) -> Any:
            return first_value(await self._fetch(command, cursor, cancellation))

        return await self._run(command, transaction, consume, cancellation)

    # --- Transactions ---

    async def begin_transaction(self) -> AsyncTransaction:
        """Start a transaction on the client's connection.

        Raises:
            TransactionStateError: If a transaction is already active.
        """
        if self._transaction is not None:
            raise TransactionStateError("active", "begin")
        connection = await self._connections.open()
        self._transaction = AsyncTransaction(connection, on_finish=self._transaction_finished)
        return self._transaction

    async def end_transaction(self, transaction: AsyncTransaction | None = None) -> None:
        """Commit *transaction* (default: the active one)."""
        tx = transaction or self._transaction
        if tx is None:
            raise TransactionStateError("idle", "end")
        try:
            await tx.commit()
        except TransactionStateError:
            raise
        except Exception as e:
            raise CommandExecutionError("end_transaction", None, None, str(e)) from e

    async def rollback_transaction(self, transaction: AsyncTransaction | None = None) -> None:
        """Roll back *transaction* (default: the active one)."""
        tx = transaction or self._transaction
        if tx is None:
            raise TransactionStateError("idle", "rollback")
        try:
            await tx.rollback()
        except TransactionStateError:
            raise
        except Exception as e:
            raise CommandExecutionError("rollback_transaction", None, None, str(e)) from e

    async def _transaction_finished(self, transaction: AsyncTransaction) -> None:
        if self._transaction is transaction:
            self._transaction = None
            await self._release()

    # --- Writes ---

    async def insert(
        self,
        item: Any,
        columns: Sequence[str] | None = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> Any:
        """Insert *item* and return its generated key (or None)."""
        command = self._planner.insert(item, columns)

        async def consume(connection: Any, cursor: Any) -> Any:
            if command.returning:
                return first_value(await self._fetch(command, cursor, cancellation))
            if command.id_sql:
                id_command = Command("insert", command.id_sql)
                id_cursor = await self._execute(connection, id_command, cancellation)
                return first_value(await self._fetch(id_command, id_cursor, cancellation))
            return command.supplied_id

        new_id = await self._run(command, transaction, consume, cancellation)
        return self._planner.assign_id(item, new_id)

    async def create(
        self,
        tp: type[T],
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
        **values: Any,
    ) -> T:
        """Build a ``tp`` from *values*, insert it and return it."""
        descriptor = self._planner.mapped(tp, "create")
        if descriptor.default_factory is not None:
            item = descriptor.new()
            for name, value in values.items():
                descriptor[name].set_value(item, value)
        else:
            item = tp(**values)
        await self.insert(item, transaction=transaction, cancellation=cancellation)
        return item

    async def _rowcount(
        self,
        command: Command,
        transaction: AsyncTransaction | None,
        cancellation: asyncio.Event | None,
    ) -> int:
        async def consume(_: Any, cursor: Any) -> int:
            return int(cursor.rowcount)

        return await self._run(command, transaction, consume, cancellation)

    async def update(
        self,
        item: Any,
        where: Predicate = None,
        columns: Sequence[str] | None = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> int:
        """Update *item* by primary key, or the rows *where* selects."""
        command = self._planner.update(item, where, columns)
        return await self._rowcount(command, transaction, cancellation)

    async def delete(
        self,
        item: Any = None,
        *,
        where: Predicate = None,
        tp: Any = None,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> int:
        """Delete *item* by primary key, or the ``tp`` rows *where* selects."""
        target = tp if tp is not None else type(item) if item is not None else None
        if target is None:
            raise ValueError("delete needs an item or a type")
        command = self._planner.delete(target, item, where)
        return await self._rowcount(command, transaction, cancellation)

    async def _range(
        self,
        method: str,
        items: Iterable[Any],
        transaction: AsyncTransaction | None,
        action: Callable[[Any, AsyncTransaction], Any],
    ) -> int:
        tx = self._resolve(transaction)
        owned = tx is None
        if tx is None:
            tx = await self.begin_transaction()
        total = 0
        try:
            for item in items:
                total += await action(item, tx)
            if owned:
                await self.end_transaction(tx)
        except asyncio.CancelledError:
            await self._rollback_quietly(tx, method)
            raise
        except Exception as e:
            await self._rollback_quietly(tx, method)
            raise range_failure(method, e) from e
        return total

    async def insert_range(
        self,
        items: Iterable[Any],
        columns: Sequence[str] | None = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> int:
        """Insert every item in one transaction; returns the number inserted."""

        async def insert_one(item: Any, tx: AsyncTransaction) -> int:
            await self.insert(item, columns, transaction=tx, cancellation=cancellation)
            return 1

        return await self._range("insert_range", items, transaction, insert_one)

    async def update_range(
        self,
        items: Iterable[Any],
        columns: Sequence[str] | None = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> int:
        """Update every item in one transaction; returns total affected rows."""

        async def update_one(item: Any, tx: AsyncTransaction) -> int:
            return await self.update(item, columns=columns, transaction=tx, cancellation=cancellation)

        return await self._range("update_range", items, transaction, update_one)

    async def delete_range(
        self,
        items: Iterable[Any],
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> int:
        """Delete every item in one transaction; returns total affected rows."""

        async def delete_one(item: Any, tx: AsyncTransaction) -> int:
            return await self.delete(item, transaction=tx, cancellation=cancellation)

        return await self._range("delete_range", items, transaction, delete_one)

    async def execute_non_query(
        self,
        sql: str,
        params: Any = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> int:
        """Run a statement and return the affected row count."""
        command = self._planner.raw(sql, params, method="execute_non_query")
        return await self._rowcount(command, transaction, cancellation)

    async def execute_scalar(
        self,
        sql: str,
        params: Any = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> Any:
        """Run a statement and return the first column of its first row."""
        command = self._planner.raw(sql, params, method="execute_scalar")
        return await self._scalar(command, transaction, cancellation)

    # --- Queries ---

    async def query(
        self,
        tp: type[T] | Any,
        sql: str | None = None,
        params: Any = None,
        *,
        columns: Sequence[str] | None = None,
        column_map: ColumnMap | None = None,
        converter: ValueConverter | None = None,
        fetch_rows: int = -1,
        offset_rows: int = 0,
        factory: ItemFactory | None = None,
        collection: Callable[[list[Any]], Any] = list,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> Any:
        """Materialize the rows of *sql* (default: a SELECT of ``tp``) as ``tp``."""
        if sql is None:
            command = self._planner.select(
                tp, columns=columns, limit=fetch_rows, offset=offset_rows, method="query"
            )
            selected = None
        else:
            command = self._planner.raw(sql, params, limit=fetch_rows, offset=offset_rows)
            selected = _selected(self._planner, tp, columns)

        async def consume(_: Any, cursor: Any) -> list[Any]:
            return await self._read_items(
                command,
                cursor,
                tp,
                cancellation,
                selected=selected,
                column_map=column_map,
                converter=converter,
                factory=factory,
                limit=fetch_rows,
            )

        return collection(await self._run(command, transaction, consume, cancellation))

    async def to_list(
        self,
        tp: type[T],
        where: Predicate = None,
        *,
        columns: Sequence[str] | None = None,
        order_by: OrderBy | None = None,
        column_map: ColumnMap | None = None,
        converter: ValueConverter | None = None,
        fetch_rows: int = -1,
        offset_rows: int = 0,
        factory: ItemFactory | None = None,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> list[T]:
        """Rows of ``tp``'s table matching *where*, as ``tp`` instances."""
        command = self._planner.select(
            tp, where, columns=columns, order_by=order_by, limit=fetch_rows, offset=offset_rows
        )

        async def consume(_: Any, cursor: Any) -> list[Any]:
            return await self._read_items(
                command,
                cursor,
                tp,
                cancellation,
                column_map=column_map,
                converter=converter,
                factory=factory,
                limit=fetch_rows,
            )

        return await self._run(command, transaction, consume, cancellation)

    async def first(
        self,
        tp: type[T],
        where: Predicate = None,
        *,
        order_by: OrderBy | None = None,
        columns: Sequence[str] | None = None,
        column_map: ColumnMap | None = None,
        converter: ValueConverter | None = None,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> T | None:
        """First matching ``tp`` row, or None."""
        items = await self.to_list(
            tp,
            where,
            columns=columns,
            order_by=order_by,
            column_map=column_map,
            converter=converter,
            fetch_rows=1,
            transaction=transaction,
            cancellation=cancellation,
        )
        return items[0] if items else None

    async def _table(
        self,
        command: Command,
        transaction: AsyncTransaction | None,
        cancellation: asyncio.Event | None,
    ) -> tuple[list[str], list[tuple[Any, ...]]]:
        async def consume(_: Any, cursor: Any) -> tuple[list[str], list[tuple[Any, ...]]]:
            return await self._read_table(command, cursor, cancellation)

        return await self._run(command, transaction, consume, cancellation)

    async def to_dictionary(
        self,
        sql: str | None = None,
        params: Any = None,
        *,
        tp: Any = None,
        key: str | None = None,
        value: str | None = None,
        where: Predicate = None,
        key_type: Any = Any,
        value_type: Any = Any,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> dict[Any, Any]:
        """Dict of the first two columns of *sql*, or of ``tp``'s *key*/*value* members."""
        if tp is not None:
            if key is None or value is None:
                raise ValueError("to_dictionary with a type needs key and value members")
            descriptor = self._planner.mapped(tp, "to_dictionary")
            key_type = descriptor[key].declared_type if key_type is Any else key_type
            value_type = descriptor[value].declared_type if value_type is Any else value_type
            command = self._planner.select(tp, where, columns=[key, value], method="to_dictionary")
        elif sql is not None:
            command = self._planner.raw(sql, params, method="to_dictionary")
        else:
            raise ValueError("to_dictionary needs a statement or a type")
        _, rows = await self._table(command, transaction, cancellation)
        return to_pairs(rows, key_type, value_type)

    async def to_data_table(
        self,
        sql: str | None = None,
        params: Any = None,
        *,
        tp: Any = None,
        where: Predicate = None,
        columns: Sequence[str] | None = None,
        order_by: OrderBy | None = None,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> pd.DataFrame:
        """Result set as a ``pandas.DataFrame``."""
        if tp is not None:
            command = self._planner.select(
                tp, where, columns=columns, order_by=order_by, method="to_data_table"
            )
        elif sql is not None:
            command = self._planner.raw(sql, params, method="to_data_table")
        else:
            raise ValueError("to_data_table needs a statement or a type")
        names, rows = await self._table(command, transaction, cancellation)
        return _data_frame(names, rows)

    async def to_data_tables(
        self,
        sql: str,
        params: Any = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> list[pd.DataFrame]:
        """One DataFrame per statement of a ``;``-separated script."""
        return [
            await self.to_data_table(
                statement, params, transaction=transaction, cancellation=cancellation
            )
            for statement in self._planner.split(sql)
        ]

    # --- Aggregates ---

    async def count(
        self,
        tp: Any,
        column: str | None = None,
        where: Predicate = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> int:
        """Number of rows (or non-null *column* values) matching *where*."""
        selectors: list[AggSelector] = [(column, "COUNT")] if column else []
        command = self._planner.aggregate(tp, selectors, where, "count")
        return int(await self._scalar(command, transaction, cancellation) or 0)

    async def _aggregate_one(
        self,
        method: str,
        tp: Any,
        column: str,
        where: Predicate,
        transaction: AsyncTransaction | None,
        cancellation: asyncio.Event | None,
    ) -> Any:
        command = self._planner.aggregate(tp, [(column, method.upper())], where, method)
        return await self._scalar(command, transaction, cancellation)

    async def sum(
        self,
        tp: Any,
        column: str,
        where: Predicate = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> Any:
        return await self._aggregate_one("sum", tp, column, where, transaction, cancellation)

    async def min(
        self,
        tp: Any,
        column: str,
        where: Predicate = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> Any:
        value = await self._aggregate_one("min", tp, column, where, transaction, cancellation)
        return change_type(value, self._planner.describe(tp)[column].declared_type)

    async def max(
        self,
        tp: Any,
        column: str,
        where: Predicate = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> Any:
        value = await self._aggregate_one("max", tp, column, where, transaction, cancellation)
        return change_type(value, self._planner.describe(tp)[column].declared_type)

    async def avg(
        self,
        tp: Any,
        column: str,
        where: Predicate = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> Any:
        return await self._aggregate_one("avg", tp, column, where, transaction, cancellation)

    async def agg(
        self,
        tp: Any,
        *selectors: AggSelector,
        where: Predicate = None,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Several aggregates in one query, keyed ``{column}{FUNCTION}``."""
        command = self._planner.aggregate(tp, selectors, where, "agg")

        async def consume(_: Any, cursor: Any) -> dict[str, Any] | None:
            return await self._read_row(command, cursor, cancellation)

        row = await self._run(command, transaction, consume, cancellation)
        folded = {str(k).lower(): v for k, v in (row or {}).items()}
        return {alias: folded.get(alias.lower()) for alias in self._planner.aggregate_aliases(tp, selectors)}

    async def get_aggs(
        self,
        tp: Any,
        *columns: str,
        where: Predicate = None,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> dict[str, Aggs]:
        """COUNT, MIN, MAX, SUM and AVG of each column in one round trip."""
        names = list(columns) or self._planner.default_aggs_columns(tp)
        if not names:
            return {}
        command = self._planner.aggregate(tp, self._planner.aggs_selectors(names), where, "get_aggs")

        async def consume(_: Any, cursor: Any) -> dict[str, Any] | None:
            return await self._read_row(command, cursor, cancellation)

        row = await self._run(command, transaction, consume, cancellation)
        return self._planner.shape_aggs(tp, names, row)

    async def count_query(
        self,
        sql: str,
        params: Any = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> int:
        """Number of rows an arbitrary SELECT returns."""
        command = self._planner.count_query(sql, params)
        return int(await self._scalar(command, transaction, cancellation) or 0)

    # --- Pages ---

    async def get_pages_count(
        self,
        tp: Any,
        page_size: int,
        where: Predicate = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> int:
        check_page_size(page_size)
        total = await self.count(tp, where=where, transaction=transaction, cancellation=cancellation)
        return pages_count(total, page_size)

    async def get_pages(
        self,
        tp: Any,
        page_size: int,
        where: Predicate = None,
        *,
        transaction: AsyncTransaction | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> dict[int, tuple[int, int]]:
        """``{page: (offset, count)}`` over ``tp``'s rows, pages numbered from 1."""
        check_page_size(page_size)
        total = await self.count(tp, where=where, transaction=transaction, cancellation=cancellation)
        return pages(total, page_size)
