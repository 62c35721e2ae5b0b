"""Mapping layer - type descriptors and row materialization."""

from __future__ import annotations

from rowmap.mapping.accessors import Accessor, compile_accessor
from rowmap.mapping.annotations import (
    Column,
    Display,
    ForeignKey,
    Key,
    MappingConfig,
    NotMapped,
    Table,
    table,
)
from rowmap.mapping.convert import change_type, trim_value
from rowmap.mapping.descriptor import ConstructorInfo, MemberDescriptor, TypeDescriptor
from rowmap.mapping.materializer import ResultMaterializer, RowReader, default_converter
from rowmap.mapping.protocol import DescriptorProvider
from rowmap.mapping.registry import TypeDescriptorRegistry, default_registry, describe
from rowmap.mapping.resolver import MappingResolver, ResolvedMapping

__all__ = [
    # Annotations
    "Table",
    "Key",
    "Column",
    "ForeignKey",
    "NotMapped",
    "Display",
    "MappingConfig",
    "table",
    # Descriptors
    "TypeDescriptor",
    "MemberDescriptor",
    "ConstructorInfo",
    "DescriptorProvider",
    "TypeDescriptorRegistry",
    "default_registry",
    "describe",
    # Resolution and access
    "MappingResolver",
    "ResolvedMapping",
    "Accessor",
    "compile_accessor",
    # Materialization
    "ResultMaterializer",
    "RowReader",
    "default_converter",
    "change_type",
    "trim_value",
]
