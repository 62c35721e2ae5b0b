"""PostgreSQL adapter - sync and async using psycopg (v3+).

Rows come back as plain tuples; the clients pair them with
``cursor.description`` so repeated column names survive.
"""

from __future__ import annotations

from typing import Any

from rowmap.core.connection import ConnectionConfig


def _conninfo(config: ConnectionConfig) -> str:
    """libpq ``key=value`` string; unset fields fall back to libpq defaults."""
    fields = {
        "host": config.host,
        "port": config.port,
        "user": config.user,
        "password": config.password,
        "dbname": config.database,
        "connect_timeout": config.command_timeout,
    }
    return " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)


class PostgresqlSyncAdapter:
    """Synchronous PostgreSQL adapter using psycopg (v3+)."""

    @property
    def paramstyle(self) -> str:
        return "pyformat"

    def connect(self, config: ConnectionConfig) -> Any:
        import psycopg

        return psycopg.connect(_conninfo(config), autocommit=False, **config.extra)

    def close(self, connection: Any) -> None:
        connection.close()

    def execute(self, connection: Any, sql: str, params: dict[str, Any] | None = None) -> Any:
        return connection.cursor().execute(sql, params or {})


class PostgresqlAsyncAdapter:
    """Asynchronous PostgreSQL adapter using ``psycopg.AsyncConnection``."""

    @property
    def paramstyle(self) -> str:
        return "pyformat"

    async def connect_async(self, config: ConnectionConfig) -> Any:
        import psycopg

        return await psycopg.AsyncConnection.connect(_conninfo(config), autocommit=False, **config.extra)

    async def close_async(self, connection: Any) -> None:
        await connection.close()

    async def execute_async(self, connection: Any, sql: str, params: dict[str, Any] | None = None) -> Any:
        return await connection.cursor().execute(sql, params or {})
