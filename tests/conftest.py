"""Shared test fixtures."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from rowmap.core.client import AsyncDataClient, DataClient
from rowmap.core.connection import ConnectionConfig
from rowmap.mapping.registry import TypeDescriptorRegistry

PEOPLE_DDL = (
    "CREATE TABLE people ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "name TEXT NOT NULL UNIQUE, "
    "age INTEGER NOT NULL)"
)


@pytest.fixture
def registry() -> TypeDescriptorRegistry:
    """A registry private to one test."""
    return TypeDescriptorRegistry()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """SQLite database file with the people table created."""
    path = tmp_path / "test.db"
    conn = sqlite3.connect(path)
    conn.execute(PEOPLE_DDL)
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def sqlite_config(db_path: Path) -> ConnectionConfig:
    """SQLite file connection config."""
    return ConnectionConfig(driver="sqlite", database=str(db_path))


@pytest.fixture
def client(sqlite_config: ConnectionConfig, registry: TypeDescriptorRegistry):
    with DataClient(sqlite_config, registry=registry) as data_client:
        yield data_client


@pytest.fixture
async def async_client(sqlite_config: ConnectionConfig, registry: TypeDescriptorRegistry):
    async with AsyncDataClient(sqlite_config, registry=registry) as data_client:
        yield data_client
