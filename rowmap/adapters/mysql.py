"""MySQL adapter - sync (mysql-connector-python) and async (aiomysql)."""

from __future__ import annotations

from typing import Any

from rowmap.core.connection import ConnectionConfig

_DEFAULT_PORT = 3306


def _connect_kwargs(config: ConnectionConfig) -> dict[str, Any]:
    return {
        "host": config.host,
        "port": config.port or _DEFAULT_PORT,
        "user": config.user,
        "password": config.password or "",
        "autocommit": False,
    }


class MysqlSyncAdapter:
    """Synchronous MySQL adapter using mysql-connector-python."""

    @property
    def paramstyle(self) -> str:
        return "pyformat"

    def connect(self, config: ConnectionConfig) -> Any:
        import mysql.connector

        return mysql.connector.connect(
            database=config.database,
            connection_timeout=config.command_timeout,
            **_connect_kwargs(config),
            **config.extra,
        )

    def close(self, connection: Any) -> None:
        connection.close()

    def execute(self, connection: Any, sql: str, params: dict[str, Any] | None = None) -> Any:
        # Buffered so rowcount and description are valid before fetching.
        cursor = connection.cursor(buffered=True)
        cursor.execute(sql, params or {})
        return cursor


class MysqlAsyncAdapter:
    """Asynchronous MySQL adapter using aiomysql."""

    @property
    def paramstyle(self) -> str:
        return "pyformat"

    async def connect_async(self, config: ConnectionConfig) -> Any:
        import aiomysql

        return await aiomysql.connect(
            db=config.database,
            connect_timeout=config.command_timeout,
            **_connect_kwargs(config),
            **config.extra,
        )

    async def close_async(self, connection: Any) -> None:
        # aiomysql closes synchronously; ensure_closed would wait on the server.
        connection.close()

    async def execute_async(self, connection: Any, sql: str, params: dict[str, Any] | None = None) -> Any:
        cursor = await connection.cursor()
        await cursor.execute(sql, params or {})
        return cursor
