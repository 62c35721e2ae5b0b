"""RowMap - descriptor-driven CRUD and query execution over DB-API drivers."""

from __future__ import annotations

from rowmap.core.client import AsyncDataClient, DataClient
from rowmap.core.commands import Aggs, CommandEvent
from rowmap.core.connection import (
    AsyncConnectionManager,
    ConnectionConfig,
    ConnectionManager,
)
from rowmap.core.enums import AggregateFunction, DatabaseBackend
from rowmap.core.exceptions import (
    AdapterError,
    BindingError,
    ColumnMismatchError,
    CommandExecutionError,
    ConnectionError,  # noqa: A004
    ExecutionError,
    MappingError,
    RowMapError,
    TransactionError,
    TransactionStateError,
)
from rowmap.core.params import get_params
from rowmap.core.transaction import AsyncTransaction, Transaction
from rowmap.mapping import (
    Column,
    Display,
    ForeignKey,
    Key,
    MappingConfig,
    NotMapped,
    ResultMaterializer,
    TypeDescriptorRegistry,
    default_registry,
    describe,
    table,
)
from rowmap.sql import CommandBuilder, ProviderOptions, SqlCommandBuilder, Where

__all__ = [
    # Client
    "DataClient",
    "AsyncDataClient",
    "Aggs",
    "CommandEvent",
    # Connection
    "ConnectionConfig",
    "ConnectionManager",
    "AsyncConnectionManager",
    # Transaction
    "Transaction",
    "AsyncTransaction",
    # Mapping
    "table",
    "Key",
    "Column",
    "ForeignKey",
    "NotMapped",
    "Display",
    "MappingConfig",
    "TypeDescriptorRegistry",
    "default_registry",
    "describe",
    "ResultMaterializer",
    "get_params",
    # SQL
    "CommandBuilder",
    "SqlCommandBuilder",
    "ProviderOptions",
    "Where",
    # Enums
    "DatabaseBackend",
    "AggregateFunction",
    # Exceptions
    "RowMapError",
    "MappingError",
    "ColumnMismatchError",
    "BindingError",
    "ExecutionError",
    "CommandExecutionError",
    "TransactionError",
    "TransactionStateError",
    "AdapterError",
    "ConnectionError",
]
