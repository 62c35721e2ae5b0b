"""Unit tests for mapping configuration and resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, ClassVar

import pytest

from rowmap.core.exceptions import MappingError
from rowmap.mapping.annotations import (
    Column,
    Display,
    ForeignKey,
    Key,
    MappingConfig,
    NotMapped,
    table,
)
from rowmap.mapping.introspect import MemberKind, enumerate_members
from rowmap.mapping.resolver import MappingResolver


@dataclass
class Invoice:
    InvoiceNo: Annotated[int, Key()] = 0
    customer_id: Annotated[int, ForeignKey("Customer")] = 0
    amount: Annotated[float, Column("total_amount"), Display("Amount", group="Money")] = 0.0
    memo: str = ""
    tags: list[str] = field(default_factory=list)
    rate: ClassVar[float] = 0.2
    _secret: str = ""


@table(config=MappingConfig().table("shipments").key("tracking"))
@dataclass
class Shipment:
    tracking: str = ""
    carrier: str = ""


@dataclass
class CompositeKey:
    region: Annotated[str, Key()] = ""
    number: Annotated[int, Key()] = 0
    label: str = ""


@dataclass
class Entry:
    id: int = 0


@dataclass
class Draft(Entry):
    owner: MissingOwner | None = None  # noqa: F821


def _resolve(cls: type, resolver: MappingResolver | None = None):
    return (resolver or MappingResolver()).resolve(cls, enumerate_members(cls))


class TestEnumerateMembers:
    def test_skips_private_and_classvars(self) -> None:
        names = [m.name for m in enumerate_members(Invoice)]
        assert names == ["InvoiceNo", "customer_id", "amount", "memo", "tags"]

    def test_markers_are_collected(self) -> None:
        amount = next(m for m in enumerate_members(Invoice) if m.name == "amount")
        assert amount.kind is MemberKind.FIELD
        assert amount.declared_type is float
        assert Column("total_amount") in amount.markers

    def test_plain_class_init_parameters(self) -> None:
        class Legacy:
            def __init__(self, code, title: str = "") -> None:
                self.code = code
                self.title = title

        members = {m.name: m for m in enumerate_members(Legacy)}
        assert set(members) == {"code", "title"}
        assert members["title"].declared_type is str

    def test_unresolved_annotations_read_as_any(self) -> None:
        members = {m.name: m for m in enumerate_members(Draft)}
        assert members["owner"].declared_type is Any
        assert members["id"].declared_type is int

    def test_plain_class_unresolved_init_annotation(self) -> None:
        class Legacy:
            def __init__(self, code: MissingCode, title: str = "") -> None:  # noqa: F821
                self.code = code
                self.title = title

        members = {m.name: m for m in enumerate_members(Legacy)}
        assert members["code"].declared_type is Any
        assert members["title"].declared_type is Any


class TestResolve:
    def test_markers(self) -> None:
        mapping = _resolve(Invoice)
        assert mapping.table_name == "Invoice"
        assert mapping.primary_keys == ("InvoiceNo",)
        assert mapping.foreign_keys == ("customer_id",)
        assert mapping.column_members == ("customer_id", "amount")
        assert mapping.members["amount"].column_name == "total_amount"
        assert mapping.members["customer_id"].foreign_key_name == "Customer"
        assert mapping.members["amount"].display == Display("Amount", group="Money")

    def test_collections_are_not_basic(self) -> None:
        mapping = _resolve(Invoice)
        assert "tags" not in mapping.basic_members

    def test_decorator_config(self) -> None:
        mapping = _resolve(Shipment)
        assert mapping.table_name == "shipments"
        assert mapping.primary_keys == ("tracking",)
        assert mapping.column_members == ("carrier",)

    def test_registered_config_takes_precedence(self) -> None:
        configs = {Shipment: MappingConfig().table("parcels").column("carrier", "carrier_code")}
        mapping = _resolve(Shipment, MappingResolver(configs))
        assert mapping.table_name == "parcels"
        assert mapping.members["carrier"].column_name == "carrier_code"
        assert mapping.primary_keys == ("tracking",)

    def test_composite_key(self) -> None:
        mapping = _resolve(CompositeKey)
        assert mapping.primary_keys == ("region", "number")
        assert mapping.column_members == ("label",)

    def test_not_mapped_member_excluded(self) -> None:
        @dataclass
        class Draft:
            id: int = 0
            body: str = ""
            preview: Annotated[str, NotMapped()] = ""

        mapping = _resolve(Draft)
        assert mapping.column_members == ("body",)
        assert mapping.members["preview"].is_not_mapped

    def test_no_primary_key(self) -> None:
        @dataclass
        class Reading:
            sensor: str = ""
            value: float = 0.0

        assert _resolve(Reading).primary_keys == ()


class TestMappingConfig:
    def test_empty_table_name_rejected(self) -> None:
        with pytest.raises(MappingError):
            MappingConfig().table("  ")

    def test_empty_column_name_rejected(self) -> None:
        with pytest.raises(MappingError, match="non-empty"):
            MappingConfig().column("amount", " ")

    def test_merge_overlays_members(self) -> None:
        base = MappingConfig().table("a").column("x", "col_x")
        merged = base.merge(MappingConfig().key("x").describe(name="Thing"))
        assert merged.table_name == "a"
        assert merged.members["x"].key
        assert merged.members["x"].column_name == "col_x"
        assert merged.display is not None and merged.display.name == "Thing"

    def test_decorator_rejects_blank_name(self) -> None:
        with pytest.raises(MappingError):
            table(" ")
