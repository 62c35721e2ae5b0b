"""Unit tests for SqlCommandBuilder and ProviderOptions."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated

import pytest

from rowmap.core.enums import DatabaseBackend
from rowmap.core.exceptions import MappingError
from rowmap.mapping.annotations import Column, Key, table
from rowmap.mapping.descriptor import TypeDescriptor
from rowmap.mapping.registry import TypeDescriptorRegistry
from rowmap.sql.builder import SqlCommandBuilder
from rowmap.sql.options import (
    DEFAULT_OPTIONS,
    MYSQL_OPTIONS,
    POSTGRESQL_OPTIONS,
    SQLITE_OPTIONS,
    ProviderOptions,
)
from rowmap.sql.predicate import Where
from rowmap.sql.protocol import CommandBuilder


@table("people")
@dataclass
class Person:
    id: int = 0
    name: str = ""
    age: int = 0


@table("ledger", schema="acct")
@dataclass
class Entry:
    region: Annotated[str, Key()] = ""
    number: Annotated[int, Key()] = 0
    amount: Annotated[Decimal, Column("amt")] = Decimal(0)


@dataclass
class Unkeyed:
    sensor: str = ""
    reading: float = 0.0


class Mood(enum.Enum):
    HAPPY = "happy"


@pytest.fixture
def people(registry: TypeDescriptorRegistry) -> TypeDescriptor:
    return registry.get_or_create(Person)


@pytest.fixture
def entries(registry: TypeDescriptorRegistry) -> TypeDescriptor:
    return registry.get_or_create(Entry)


@pytest.fixture
def builder() -> SqlCommandBuilder:
    return SqlCommandBuilder.for_backend("sqlite")


class TestStatements:
    def test_satisfies_protocol(self, builder: SqlCommandBuilder) -> None:
        assert isinstance(builder, CommandBuilder)

    def test_select(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        assert builder.build_select(people) == 'SELECT "name", "age", "id" FROM "people"'

    def test_select_columns(self, builder: SqlCommandBuilder, entries: TypeDescriptor) -> None:
        assert builder.build_select(entries, ["amount"]) == 'SELECT "amt" FROM "acct"."ledger"'

    def test_insert(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        assert builder.build_insert(people) == 'INSERT INTO "people" ("name", "age") VALUES (:name, :age)'

    def test_insert_placeholders_use_member_names(
        self, builder: SqlCommandBuilder, entries: TypeDescriptor
    ) -> None:
        sql = builder.build_insert(entries, ["region", "number", "amount"])
        assert sql == (
            'INSERT INTO "acct"."ledger" ("region", "number", "amt") '
            "VALUES (:region, :number, :amount)"
        )

    def test_update(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        assert builder.build_update(people) == 'UPDATE "people" SET "name" = :name, "age" = :age'

    def test_update_without_columns(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        with pytest.raises(MappingError, match="no columns"):
            builder.build_update(people, [])

    def test_delete(self, builder: SqlCommandBuilder, entries: TypeDescriptor) -> None:
        assert builder.build_delete(entries) == 'DELETE FROM "acct"."ledger"'

    def test_key_where_composite(self, builder: SqlCommandBuilder, entries: TypeDescriptor) -> None:
        assert builder.build_key_where(entries) == 'WHERE "region" = :region AND "number" = :number'

    def test_key_where_falls_back_to_all_members(
        self, builder: SqlCommandBuilder, registry: TypeDescriptorRegistry
    ) -> None:
        descriptor = registry.get_or_create(Unkeyed)
        assert builder.build_key_where(descriptor) == 'WHERE "sensor" = :sensor AND "reading" = :reading'

    def test_mysql_quoting(self, people: TypeDescriptor) -> None:
        builder = SqlCommandBuilder.for_backend(DatabaseBackend.MYSQL)
        assert builder.build_delete(people) == "DELETE FROM `people`"


class TestWhere:
    def test_none(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        assert builder.build_where(people, None) == ("", {})

    def test_mapping(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        clause, params = builder.build_where(people, {"name": "Ann", "age": 30})
        assert clause == 'WHERE "name" = :w_name AND "age" = :w_age'
        assert params == {"w_name": "Ann", "w_age": 30}

    def test_null_and_in(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        clause, params = builder.build_where(people, {"name": None, "age": [30, 40]})
        assert clause == 'WHERE "name" IS NULL AND "age" IN (:w_age_0, :w_age_1)'
        assert params == {"w_age_0": 30, "w_age_1": 40}

    def test_empty_in_matches_nothing(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        assert builder.build_where(people, {"id": []}) == ("WHERE 1 = 0", {})

    def test_column_names_used(self, builder: SqlCommandBuilder, entries: TypeDescriptor) -> None:
        clause, _ = builder.build_where(entries, {"amount": 5})
        assert clause == 'WHERE "amt" = :w_amount'

    def test_where_object(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        clause, params = builder.build_where(people, Where("age > :min_age", min_age=18))
        assert clause == "WHERE age > :min_age"
        assert params == {"min_age": 18}

    def test_unknown_member(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        with pytest.raises(MappingError):
            builder.build_where(people, {"height": 1})


class TestOrderingAndPaging:
    def test_order_by_forms(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        assert builder.build_order_by(people, "name") == 'ORDER BY "name" ASC'
        assert builder.build_order_by(people, ["-age", ("id", True)]) == 'ORDER BY "age" DESC, "id" ASC'
        assert builder.build_order_by(people, None) == ""

    def test_limit_offset_adds_key_order(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        sql = builder.add_limit_offset('SELECT "name" FROM "people";', 10, 20, people)
        assert sql == 'SELECT "name" FROM "people" ORDER BY "id" ASC LIMIT 10 OFFSET 20'

    def test_limit_offset_keeps_existing_order(
        self, builder: SqlCommandBuilder, people: TypeDescriptor
    ) -> None:
        sql = builder.add_limit_offset('SELECT * FROM "people" ORDER BY "age" DESC', 5, 0, people)
        assert sql == 'SELECT * FROM "people" ORDER BY "age" DESC LIMIT 5 OFFSET 0'

    def test_negative_limit_disables_paging(self, builder: SqlCommandBuilder) -> None:
        assert builder.add_limit_offset("SELECT 1", -1, 0) == "SELECT 1"

    def test_oracle_template(self) -> None:
        builder = SqlCommandBuilder.for_backend("oracle")
        assert builder.add_limit_offset("SELECT 1 FROM dual", 5, 10) == (
            "SELECT 1 FROM dual OFFSET 10 ROWS FETCH NEXT 5 ROWS ONLY"
        )

    def test_wrap_count(self, builder: SqlCommandBuilder) -> None:
        assert builder.wrap_count("SELECT * FROM t;") == "SELECT COUNT(*) FROM (SELECT * FROM t) CountTable"


class TestAggregates:
    def test_count_all(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        assert builder.build_agg(people, []) == 'SELECT COUNT(*) FROM "people"'

    def test_selectors(self, builder: SqlCommandBuilder, entries: TypeDescriptor) -> None:
        sql = builder.build_agg(entries, [("amount", "sum"), (None, "COUNT")])
        assert sql == 'SELECT SUM("amt") AS "amtSUM", COUNT(*) AS "COUNT" FROM "acct"."ledger"'

    def test_invalid_function(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        with pytest.raises(MappingError, match="Invalid aggregate"):
            builder.build_agg(people, [("age", "SUM(1); DROP")])


class TestIdentity:
    def test_sqlite_queries_last_rowid(self) -> None:
        assert SqlCommandBuilder.for_backend("sqlite").inserted_id_query == "SELECT last_insert_rowid()"

    def test_postgresql_returning(self, people: TypeDescriptor) -> None:
        builder = SqlCommandBuilder.for_backend("postgresql")
        assert builder.add_returning('INSERT INTO "people" ("name") VALUES (:name)', people) == (
            'INSERT INTO "people" ("name") VALUES (:name) RETURNING "id"'
        )

    def test_returning_needs_single_key(self, entries: TypeDescriptor) -> None:
        builder = SqlCommandBuilder.for_backend("postgresql")
        assert builder.add_returning("INSERT INTO x VALUES (1)", entries) is None

    def test_no_returning_on_sqlite(self, builder: SqlCommandBuilder, people: TypeDescriptor) -> None:
        assert builder.add_returning("INSERT INTO x VALUES (1)", people) is None


class TestProviderOptions:
    def test_presets(self) -> None:
        assert ProviderOptions.for_backend("sqlite") is SQLITE_OPTIONS
        assert ProviderOptions.for_backend(DatabaseBackend.POSTGRESQL) is POSTGRESQL_OPTIONS
        assert ProviderOptions.for_backend("MySQL") is MYSQL_OPTIONS
        assert ProviderOptions.for_backend("unknown") is DEFAULT_OPTIONS

    def test_options_are_frozen(self) -> None:
        with pytest.raises(Exception):  # noqa: B017
            SQLITE_OPTIONS.name_prefix = "["  # type: ignore[misc]

    def test_derived_options(self) -> None:
        options = SQLITE_OPTIONS.model_copy(update={"name_prefix": "[", "name_suffix": "]"})
        assert options.quote("table") == "[table]"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, "NULL"),
            (True, "1"),
            (False, "0"),
            (42, "42"),
            (Decimal("1.50"), "1.50"),
            ("O'Brien", "'O''Brien'"),
            (datetime(2024, 3, 1, 10, 30), "'2024-03-01 10:30:00'"),
            (date(2024, 3, 1), "'2024-03-01'"),
            (b"\x01\xff", "X'01FF'"),
            (Mood.HAPPY, "'happy'"),
        ],
    )
    def test_to_literal(self, value: object, expected: str) -> None:
        assert DEFAULT_OPTIONS.to_literal(value) == expected

    def test_uuid_literal(self) -> None:
        value = uuid.UUID("12345678-1234-5678-1234-567812345678")
        assert DEFAULT_OPTIONS.to_literal(value) == "'12345678-1234-5678-1234-567812345678'"

    def test_postgresql_booleans(self) -> None:
        assert POSTGRESQL_OPTIONS.to_literal(True) == "TRUE"
