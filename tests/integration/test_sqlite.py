"""Integration tests for the data clients against SQLite.

Covers: CRUD with generated keys, range operations and their rollback,
queries and materialization, aggregates, paging and explicit transactions,
sync and async, against a real SQLite database file.
"""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Annotated

import pytest

from rowmap.core.client import AsyncDataClient, DataClient
from rowmap.core.commands import Aggs
from rowmap.core.connection import ConnectionConfig
from rowmap.core.exceptions import BindingError, CommandExecutionError, TransactionStateError
from rowmap.mapping.annotations import Column, Key, MappingConfig, table
from rowmap.mapping.registry import TypeDescriptorRegistry
from rowmap.sql.predicate import Where

pytestmark = pytest.mark.integration

# --- Test models ---


@table("people")
@dataclass
class Person:
    id: int = 0
    name: str = ""
    age: int = 0


@table("people")
@dataclass
class PersonName:
    id: Annotated[int, Key()] = 0
    label: Annotated[str, Column("name")] = ""


@dataclass
class Badge:
    code: str = ""
    holder: str = ""


@dataclass
class NameAndAge:
    name: str
    age: int


@table("child")
@dataclass
class Child:
    id: int = 0
    parent_id: int = 0


# --- Fixtures ---


@pytest.fixture
def seeded(client: DataClient) -> DataClient:
    client.insert_range(
        [Person(name="Ann", age=30), Person(name="Bob", age=41), Person(name="Cy", age=52)]
    )
    return client


class TestCrud:
    def test_insert_then_first(self, client: DataClient) -> None:
        person = Person(name="Ann", age=30)

        new_id = client.insert(person)

        assert isinstance(new_id, int)
        assert new_id > 0
        assert person.id == new_id
        assert client.first(Person, {"id": new_id}) == Person(new_id, "Ann", 30)

    def test_insert_with_supplied_key(self, client: DataClient) -> None:
        assert client.insert(Person(id=100, name="Dee", age=25)) == 100
        assert client.first(Person, {"id": 100}).name == "Dee"

    def test_create(self, client: DataClient) -> None:
        person = client.create(Person, name="Eve", age=19)
        assert person.id > 0
        assert client.count(Person) == 1

    def test_update_is_idempotent(self, seeded: DataClient) -> None:
        ann = seeded.first(Person, {"name": "Ann"})
        ann.age = 31

        assert seeded.update(ann) == 1
        assert seeded.update(ann) == 1
        assert seeded.first(Person, {"id": ann.id}) == ann

    def test_update_empty_columns_updates_every_column(self, client: DataClient) -> None:
        person = Person(name="Ann", age=30)
        client.insert(person, columns=[])
        person.name, person.age = "Anna", 31

        assert client.update(person, columns=[]) == 1
        assert client.first(Person, {"id": person.id}) == Person(person.id, "Anna", 31)

    def test_update_selected_columns_with_filter(self, seeded: DataClient) -> None:
        affected = seeded.update(Person(age=99), Where("age > :min_age", min_age=40), columns=["age"])
        assert affected == 2
        assert sorted(p.age for p in seeded.to_list(Person)) == [30, 99, 99]

    def test_delete(self, seeded: DataClient) -> None:
        bob = seeded.first(Person, {"name": "Bob"})
        assert seeded.delete(bob) == 1
        assert seeded.first(Person, {"id": bob.id}) is None
        assert seeded.delete(tp=Person, where={"name": ["Ann", "Cy"]}) == 2
        assert seeded.count(Person) == 0

    def test_driver_error_is_wrapped(self, client: DataClient) -> None:
        with pytest.raises(CommandExecutionError) as exc_info:
            client.execute_non_query("INSERT INTO missing_table VALUES (:x)", {"x": 1})
        assert exc_info.value.method == "execute_non_query"
        assert exc_info.value.params == {"x": 1}


class TestRanges:
    def test_insert_range_assigns_keys(self, client: DataClient) -> None:
        people = [Person(name="Ann", age=30), Person(name="Bob", age=41)]
        assert client.insert_range(people) == 2
        assert all(p.id > 0 for p in people)
        assert client.count(Person) == 2

    def test_insert_range_rolls_back_entirely(self, client: DataClient) -> None:
        people = [Person(name="Ann", age=30), Person(name="Bob", age=41), Person(name="Ann", age=50)]

        with pytest.raises(CommandExecutionError) as exc_info:
            client.insert_range(people)

        assert exc_info.value.method == "insert_range"
        assert client.count(Person) == 0
        assert client.transaction is None

    def test_update_range(self, seeded: DataClient) -> None:
        people = seeded.to_list(Person)
        for person in people:
            person.age += 1
        assert seeded.update_range(people) == 3
        assert seeded.sum(Person, "age") == 126

    def test_delete_range_rolls_back_entirely(self, seeded: DataClient) -> None:
        people = seeded.to_list(Person)
        seeded.execute_non_query(
            "CREATE TRIGGER no_cy BEFORE DELETE ON people WHEN old.name = 'Cy' "
            "BEGIN SELECT RAISE(ABORT, 'Cy stays'); END"
        )

        with pytest.raises(CommandExecutionError, match="Cy stays"):
            seeded.delete_range(people)

        assert seeded.count(Person) == 3


class TestQueries:
    def test_to_list_ordering_and_paging(self, seeded: DataClient) -> None:
        people = seeded.to_list(Person, order_by="-age", fetch_rows=2)
        assert [p.name for p in people] == ["Cy", "Bob"]
        page = seeded.to_list(Person, fetch_rows=2, offset_rows=2)
        assert [p.name for p in page] == ["Cy"]

    def test_query_raw_sql(self, seeded: DataClient) -> None:
        people = seeded.query(Person, "SELECT * FROM people WHERE age < :age ORDER BY age", {"age": 50})
        assert [p.name for p in people] == ["Ann", "Bob"]

    def test_query_placeholders_reject_unbindable_params(self, seeded: DataClient) -> None:
        with pytest.raises(BindingError):
            seeded.query(Person, "SELECT * FROM people WHERE age < :age", 50)

    def test_query_scalars_and_collection(self, seeded: DataClient) -> None:
        names = seeded.query(str, "SELECT name FROM people", collection=set)
        assert names == {"Ann", "Bob", "Cy"}

    def test_query_constructor_type(self, seeded: DataClient) -> None:
        rows = seeded.query(NameAndAge, "SELECT name, age FROM people ORDER BY name", fetch_rows=1)
        assert rows == [NameAndAge("Ann", 30)]

    def test_query_default_select_with_column_names(self, seeded: DataClient) -> None:
        labels = seeded.query(PersonName)
        assert sorted(p.label for p in labels) == ["Ann", "Bob", "Cy"]

    def test_registered_mapping(self, sqlite_config: ConnectionConfig) -> None:
        registry = TypeDescriptorRegistry()
        registry.register(Badge, MappingConfig().table("people").key("code").column("holder", "name"))
        registry.register(Badge, MappingConfig().column("code", "id"))
        with DataClient(sqlite_config, registry=registry) as client:
            client.insert(Person(name="Ann", age=30))
            badges = client.to_list(Badge)
        assert badges == [Badge(code="1", holder="Ann")]

    def test_first_missing(self, client: DataClient) -> None:
        assert client.first(Person, {"name": "Nobody"}) is None

    def test_to_dictionary(self, seeded: DataClient) -> None:
        ages = seeded.to_dictionary(tp=Person, key="name", value="age")
        assert ages == {"Ann": 30, "Bob": 41, "Cy": 52}
        raw = seeded.to_dictionary("SELECT age, name FROM people WHERE age > :a", {"a": 40}, key_type=str)
        assert raw == {"41": "Bob", "52": "Cy"}

    def test_to_data_table(self, seeded: DataClient) -> None:
        frame = seeded.to_data_table(tp=Person, order_by="name")
        assert list(frame.columns) == ["name", "age", "id"]
        assert frame["name"].tolist() == ["Ann", "Bob", "Cy"]

    def test_to_data_tables(self, seeded: DataClient) -> None:
        frames = seeded.to_data_tables("SELECT name FROM people; SELECT COUNT(*) AS n FROM people")
        assert len(frames) == 2
        assert frames[1]["n"].tolist() == [3]


class TestAggregates:
    def test_empty_table(self, client: DataClient) -> None:
        assert client.count(Person) == 0
        assert client.max(Person, "age") is None
        assert client.get_pages(Person, 10) == {}
        assert client.get_pages_count(Person, 10) == 0

    def test_scalar_aggregates(self, seeded: DataClient) -> None:
        assert seeded.count(Person) == 3
        assert seeded.count(Person, where=Where("age > :a", a=35)) == 2
        assert seeded.sum(Person, "age") == 123
        assert seeded.min(Person, "age") == 30
        assert seeded.max(Person, "name") == "Cy"
        assert seeded.avg(Person, "age") == 41

    def test_agg(self, seeded: DataClient) -> None:
        result = seeded.agg(Person, ("age", "MAX"), ("age", "MIN"), (None, "COUNT"))
        assert result == {"ageMAX": 52, "ageMIN": 30, "COUNT": 3}

    def test_get_aggs(self, seeded: DataClient) -> None:
        aggs = seeded.get_aggs(Person)
        assert aggs == {"age": Aggs(count=3, min=30, max=52, sum=123, avg=Decimal(41))}

    def test_count_query(self, seeded: DataClient) -> None:
        assert seeded.count_query("SELECT * FROM people WHERE age < :a", {"a": 45}) == 2

    def test_pages(self, client: DataClient) -> None:
        client.insert_range([Person(name=f"p{i}", age=i) for i in range(7)])
        assert client.get_pages(Person, 3) == {1: (0, 3), 2: (3, 3), 3: (6, 1)}
        assert client.get_pages_count(Person, 3) == 3
        assert client.get_pages(Person, 3, {"age": [0, 1]}) == {1: (0, 2)}


class TestTransactions:
    def test_commit(self, client: DataClient) -> None:
        tx = client.begin_transaction()
        client.insert(Person(name="Ann", age=30), transaction=tx)
        client.insert(Person(name="Bob", age=41), transaction=tx)
        client.end_transaction(tx)
        assert client.count(Person) == 2

    def test_rollback(self, client: DataClient) -> None:
        tx = client.begin_transaction()
        client.insert(Person(name="Ann", age=30), transaction=tx)
        assert client.count(Person, transaction=tx) == 1
        client.rollback_transaction(tx)
        assert client.count(Person) == 0

    def test_not_reentrant(self, client: DataClient) -> None:
        tx = client.begin_transaction()
        with pytest.raises(TransactionStateError):
            client.begin_transaction()
        client.end_transaction(tx)
        with pytest.raises(TransactionStateError):
            client.end_transaction(tx)

    def test_context_manager(self, client: DataClient) -> None:
        with pytest.raises(RuntimeError, match="boom"), client.begin_transaction() as tx:
            client.insert(Person(name="Ann", age=30), transaction=tx)
            raise RuntimeError("boom")
        assert client.count(Person) == 0
        assert client.transaction is None

    def test_range_joins_outer_transaction(self, client: DataClient) -> None:
        tx = client.begin_transaction()
        client.insert_range([Person(name="Ann", age=30)], transaction=tx)
        assert tx.is_active
        client.rollback_transaction(tx)
        assert client.count(Person) == 0


@pytest.fixture
def deferred_client(db_path: Path, registry: TypeDescriptorRegistry):
    """Keep-open client whose child rows are checked against parent at COMMIT."""
    conn = sqlite3.connect(db_path)
    conn.executescript(
        "CREATE TABLE parent (id INTEGER PRIMARY KEY);"
        "CREATE TABLE child (id INTEGER PRIMARY KEY, "
        "parent_id INTEGER REFERENCES parent (id) DEFERRABLE INITIALLY DEFERRED);"
    )
    conn.close()
    config = ConnectionConfig(driver="sqlite", database=str(db_path), keep_open=True)
    with DataClient(config, registry=registry) as data_client:
        data_client.execute_non_query("PRAGMA foreign_keys = ON")
        yield data_client


class TestFailedCommit:
    def test_failed_end_transaction_discards_writes(self, deferred_client: DataClient) -> None:
        tx = deferred_client.begin_transaction()
        deferred_client.insert(Child(parent_id=7), transaction=tx)

        with pytest.raises(CommandExecutionError, match="FOREIGN KEY"):
            deferred_client.end_transaction(tx)

        assert tx.state == "rolled_back"
        deferred_client.execute_non_query("INSERT INTO parent (id) VALUES (7)")
        assert deferred_client.count(Child) == 0

    def test_failed_range_commit_discards_writes(self, deferred_client: DataClient) -> None:
        with pytest.raises(CommandExecutionError) as exc_info:
            deferred_client.insert_range([Child(parent_id=7), Child(parent_id=7)])

        assert exc_info.value.method == "insert_range"
        assert deferred_client.transaction is None
        deferred_client.execute_non_query("INSERT INTO parent (id) VALUES (7)")
        assert deferred_client.count(Child) == 0

    def test_failed_autocommit_discards_write(self, deferred_client: DataClient) -> None:
        with pytest.raises(CommandExecutionError, match="commit failed"):
            deferred_client.execute_non_query("INSERT INTO child (parent_id) VALUES (7)")

        deferred_client.execute_non_query("INSERT INTO parent (id) VALUES (7)")
        assert deferred_client.count(Child) == 0


class TestAsync:
    async def test_insert_then_first(self, async_client: AsyncDataClient) -> None:
        person = Person(name="Ann", age=30)
        new_id = await async_client.insert(person)
        assert new_id == person.id
        assert await async_client.first(Person, {"id": new_id}) == Person(new_id, "Ann", 30)

    async def test_insert_range_rolls_back_entirely(self, async_client: AsyncDataClient) -> None:
        with pytest.raises(CommandExecutionError):
            await async_client.insert_range(
                [Person(name="Ann", age=30), Person(name="Ann", age=31)]
            )
        assert await async_client.count(Person) == 0

    async def test_queries_and_aggregates(self, async_client: AsyncDataClient) -> None:
        await async_client.insert_range([Person(name="Ann", age=30), Person(name="Bob", age=40)])

        assert [p.name for p in await async_client.to_list(Person, order_by="name")] == ["Ann", "Bob"]
        assert await async_client.count(Person) == 2
        assert await async_client.max(Person, "age") == 40
        aggs = await async_client.get_aggs(Person, "age")
        assert aggs["age"].avg == Decimal(35)
        assert await async_client.get_pages(Person, 1) == {1: (0, 1), 2: (1, 1)}
        assert await async_client.to_dictionary(tp=Person, key="name", value="age") == {"Ann": 30, "Bob": 40}

    async def test_update_and_delete(self, async_client: AsyncDataClient) -> None:
        person = await async_client.create(Person, name="Ann", age=30)
        person.age = 31
        assert await async_client.update(person) == 1
        assert (await async_client.first(Person, {"id": person.id})).age == 31
        assert await async_client.delete(person) == 1
        assert await async_client.count(Person) == 0

    async def test_transaction_rollback(self, async_client: AsyncDataClient) -> None:
        tx = await async_client.begin_transaction()
        await async_client.insert(Person(name="Ann", age=30), transaction=tx)
        with pytest.raises(TransactionStateError):
            await async_client.begin_transaction()
        await async_client.rollback_transaction(tx)
        assert await async_client.count(Person) == 0

    async def test_cancellation(self, async_client: AsyncDataClient) -> None:
        cancellation = asyncio.Event()
        cancellation.set()

        with pytest.raises(asyncio.CancelledError):
            await async_client.insert(Person(name="Ann", age=30), cancellation=cancellation)

        assert await async_client.count(Person) == 0

    async def test_cancelled_range_rolls_back(self, async_client: AsyncDataClient) -> None:
        cancellation = asyncio.Event()
        seen: list[str] = []

        def cancel_after_first(event) -> None:
            seen.append(event.sql)
            cancellation.set()

        async_client.command_executed.append(cancel_after_first)

        with pytest.raises(asyncio.CancelledError):
            await async_client.insert_range(
                [Person(name="Ann", age=30), Person(name="Bob", age=41)], cancellation=cancellation
            )

        async_client.command_executed.clear()
        assert len(seen) == 1
        assert async_client.transaction is None
        assert await async_client.count(Person) == 0

    async def test_to_data_table(self, async_client: AsyncDataClient) -> None:
        await async_client.insert(Person(name="Ann", age=30))
        frame = await async_client.to_data_table("SELECT name, age FROM people")
        assert frame.to_dict("records") == [{"name": "Ann", "age": 30}]
