"""Unit tests for command planning and result shaping."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Annotated

import pytest

from rowmap.core.commands import (
    Aggs,
    CommandPlanner,
    pages,
    pages_count,
    range_failure,
    split_statements,
    to_pairs,
)
from rowmap.core.exceptions import BindingError, CommandExecutionError, MappingError
from rowmap.mapping.annotations import Key, table
from rowmap.mapping.registry import TypeDescriptorRegistry
from rowmap.sql.builder import SqlCommandBuilder
from rowmap.sql.options import SQLITE_OPTIONS


@table("people")
@dataclass
class Person:
    id: int = 0
    name: str = ""
    age: int = 0


@table("tags")
@dataclass
class Tag:
    code: Annotated[str, Key()] = ""
    label: str = ""


@pytest.fixture
def planner(registry: TypeDescriptorRegistry) -> CommandPlanner:
    return CommandPlanner(SqlCommandBuilder.for_backend("sqlite"), registry)


class TestInsert:
    def test_generated_key_left_out(self, planner: CommandPlanner) -> None:
        command = planner.insert(Person(name="Ann", age=30))
        assert command.sql == 'INSERT INTO "people" ("name", "age") VALUES (:name, :age)'
        assert command.id_sql == "SELECT last_insert_rowid()"
        assert not command.returning
        assert command.params["name"] == "Ann"

    def test_supplied_key_inserted(self, planner: CommandPlanner) -> None:
        command = planner.insert(Person(id=12, name="Ann", age=30))
        assert command.sql == 'INSERT INTO "people" ("name", "age", "id") VALUES (:name, :age, :id)'
        assert command.supplied_id == 12
        assert command.id_sql is None

    def test_empty_columns_mean_all_columns(self, planner: CommandPlanner) -> None:
        command = planner.insert(Person(name="Ann", age=30), columns=[])
        assert command.sql == 'INSERT INTO "people" ("name", "age") VALUES (:name, :age)'
        assert command.id_sql == "SELECT last_insert_rowid()"

    def test_postgresql_uses_returning(self, registry: TypeDescriptorRegistry) -> None:
        planner = CommandPlanner(SqlCommandBuilder.for_backend("postgresql"), registry)
        command = planner.insert(Person(name="Ann"))
        assert command.returning
        assert command.sql.endswith('RETURNING "id"')

    def test_assign_id_converts_to_key_type(self, planner: CommandPlanner) -> None:
        person = Person(name="Ann")
        assert planner.assign_id(person, "7") == 7
        assert person.id == 7

    def test_assign_id_none(self, planner: CommandPlanner) -> None:
        person = Person(name="Ann")
        assert planner.assign_id(person, None) is None
        assert person.id == 0

    def test_scalar_type_rejected(self, planner: CommandPlanner) -> None:
        with pytest.raises(MappingError, match="needs a mapped type"):
            planner.insert(5)


class TestUpdateDelete:
    def test_update_by_key(self, planner: CommandPlanner) -> None:
        command = planner.update(Tag(code="py", label="Python"))
        assert command.sql == 'UPDATE "tags" SET "label" = :label WHERE "code" = :code'
        assert command.params == {"label": "Python", "code": "py"}

    def test_update_empty_columns_sets_all_columns(self, planner: CommandPlanner) -> None:
        command = planner.update(Tag(code="py", label="Python"), columns=[])
        assert command.sql == 'UPDATE "tags" SET "label" = :label WHERE "code" = :code'

    def test_update_with_filter(self, planner: CommandPlanner) -> None:
        command = planner.update(Person(name="Ann", age=31), {"name": "Ann"}, ["age"])
        assert command.sql == 'UPDATE "people" SET "age" = :age WHERE "name" = :w_name'
        assert command.params["w_name"] == "Ann"
        assert command.params["age"] == 31

    def test_delete_item(self, planner: CommandPlanner) -> None:
        command = planner.delete(Tag, Tag(code="py"))
        assert command.sql == 'DELETE FROM "tags" WHERE "code" = :code'

    def test_delete_all(self, planner: CommandPlanner) -> None:
        command = planner.delete(Tag)
        assert command.sql == 'DELETE FROM "tags"'
        assert command.params == {}


class TestSelect:
    def test_paged_select_orders_by_key(self, planner: CommandPlanner) -> None:
        command = planner.select(Person, {"age": 30}, limit=10, offset=20)
        assert command.sql == (
            'SELECT "name", "age", "id" FROM "people" WHERE "age" = :w_age '
            'ORDER BY "id" ASC LIMIT 10 OFFSET 20'
        )

    def test_raw_paging_adds_no_order(self, planner: CommandPlanner) -> None:
        command = planner.raw("SELECT * FROM people", {"x": 1}, limit=5)
        assert command.sql == "SELECT * FROM people LIMIT 5 OFFSET 0"
        assert command.params == {"x": 1}

    def test_raw_rejects_empty_statement(self, planner: CommandPlanner) -> None:
        with pytest.raises(ValueError, match="non-empty"):
            planner.raw("  ")

    def test_count_query(self, planner: CommandPlanner) -> None:
        command = planner.count_query("SELECT * FROM people WHERE age > :a", {"a": 1})
        assert command.sql == "SELECT COUNT(*) FROM (SELECT * FROM people WHERE age > :a) CountTable"

    def test_placeholders_need_bindable_params(self, planner: CommandPlanner) -> None:
        with pytest.raises(BindingError, match="int"):
            planner.raw("SELECT * FROM people WHERE age > :a", 42)
        with pytest.raises(BindingError):
            planner.count_query("SELECT * FROM people WHERE age > :a")

    def test_statement_without_placeholders_ignores_params(self, planner: CommandPlanner) -> None:
        assert planner.raw("SELECT * FROM people", 42).params == {}


class TestAggregates:
    def test_aggregate_aliases(self, planner: CommandPlanner) -> None:
        assert planner.aggregate_aliases(Person, [("age", "max"), (None, "COUNT")]) == ["ageMAX", "COUNT"]

    def test_default_aggs_columns_are_numeric(self, planner: CommandPlanner) -> None:
        assert planner.default_aggs_columns(Person) == ["age"]

    def test_shape_aggs(self, planner: CommandPlanner) -> None:
        row = {"AGECOUNT": 2, "ageMIN": 30, "ageMAX": 40, "ageSUM": 70, "ageAVG": 35.0}
        assert planner.shape_aggs(Person, ["age"], row) == {
            "age": Aggs(count=2, min=30, max=40, sum=70, avg=Decimal("35.0"))
        }

    def test_shape_aggs_empty_table(self, planner: CommandPlanner) -> None:
        row = {"ageCOUNT": 0, "ageMIN": None, "ageMAX": None, "ageSUM": None, "ageAVG": None}
        assert planner.shape_aggs(Person, ["age"], row)["age"] == Aggs(0, None, None, None, None)


class TestRawSql:
    def test_params_inlined(self, planner: CommandPlanner) -> None:
        sql = planner.raw_sql(
            "SELECT * FROM t WHERE name = :name AND name_2 = :name_2 AND d = :d",
            {"name": "O'Brien", "name_2": None, "d": date(2024, 1, 2)},
        )
        assert sql == "SELECT * FROM t WHERE name = 'O''Brien' AND name_2 = NULL AND d = '2024-01-02'"

    def test_typecast_untouched(self, planner: CommandPlanner) -> None:
        assert planner.raw_sql("SELECT :n::int", {"n": 3, "int": 9}) == "SELECT 3::int"


class TestPages:
    def test_partial_last_page(self) -> None:
        assert pages(7, 3) == {1: (0, 3), 2: (3, 3), 3: (6, 1)}

    def test_exact_pages(self) -> None:
        assert pages(6, 3) == {1: (0, 3), 2: (3, 3)}
        assert pages_count(6, 3) == 2

    def test_empty(self) -> None:
        assert pages(0, 10) == {}
        assert pages_count(0, 10) == 0

    @pytest.mark.parametrize("size", [0, -5])
    def test_invalid_page_size(self, size: int) -> None:
        with pytest.raises(ValueError, match="page_size"):
            pages(10, size)


class TestHelpers:
    def test_to_pairs(self) -> None:
        assert to_pairs([("1", "a"), ("2", "b")], int, str) == {1: "a", 2: "b"}

    def test_to_pairs_needs_two_columns(self) -> None:
        with pytest.raises(MappingError):
            to_pairs([("1",)])

    def test_split_statements(self) -> None:
        script = "SELECT 1; SELECT 'a;b' ;\n\nSELECT 3;"
        assert split_statements(script) == ["SELECT 1", "SELECT 'a;b'", "SELECT 3"]

    def test_split_uses_builder_terminator(self, registry: TypeDescriptorRegistry) -> None:
        options = SQLITE_OPTIONS.model_copy(update={"statement_terminator": "/"})
        planner = CommandPlanner(SqlCommandBuilder(options), registry)
        assert planner.split("SELECT 1 / SELECT 'a/b' /") == ["SELECT 1", "SELECT 'a/b'"]

    def test_range_failure_keeps_failing_command(self) -> None:
        cause = RuntimeError("UNIQUE constraint failed")
        error = CommandExecutionError("insert", "INSERT ...", {"name": "Ann"}, str(cause))
        error.__cause__ = cause
        wrapped = range_failure("insert_range", error)
        assert wrapped.method == "insert_range"
        assert wrapped.sql == "INSERT ..."
        assert wrapped.params == {"name": "Ann"}
        assert "UNIQUE" in str(wrapped)

    def test_range_failure_other_errors(self) -> None:
        wrapped = range_failure("delete_range", MappingError("bad"))
        assert wrapped.method == "delete_range"
        assert wrapped.sql is None
