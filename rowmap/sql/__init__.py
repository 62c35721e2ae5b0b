"""SQL layer - command builder protocol, default builder and dialect options."""

from __future__ import annotations

from rowmap.sql.builder import SqlCommandBuilder
from rowmap.sql.options import (
    DEFAULT_OPTIONS,
    MYSQL_OPTIONS,
    ORACLE_OPTIONS,
    POSTGRESQL_OPTIONS,
    SQLITE_OPTIONS,
    ProviderOptions,
)
from rowmap.sql.predicate import Predicate, Where
from rowmap.sql.protocol import CommandBuilder

__all__ = [
    "CommandBuilder",
    "SqlCommandBuilder",
    "ProviderOptions",
    "DEFAULT_OPTIONS",
    "SQLITE_OPTIONS",
    "POSTGRESQL_OPTIONS",
    "MYSQL_OPTIONS",
    "ORACLE_OPTIONS",
    "Where",
    "Predicate",
]
