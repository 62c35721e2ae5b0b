"""Oracle adapter - sync and async using oracledb (thin mode)."""

from __future__ import annotations

from typing import Any

from rowmap.core.connection import ConnectionConfig

_DEFAULT_PORT = 1521


def _connect_kwargs(config: ConnectionConfig) -> dict[str, Any]:
    """``user``/``password``/``dsn`` keywords; the DSN is Easy Connect ``host:port/service``."""
    return {
        "user": config.user,
        "password": config.password,
        "dsn": f"{config.host}:{config.port or _DEFAULT_PORT}/{config.database}",
        **config.extra,
    }


class OracleSyncAdapter:
    """Synchronous Oracle adapter using oracledb."""

    @property
    def paramstyle(self) -> str:
        return "named"

    def connect(self, config: ConnectionConfig) -> Any:
        import oracledb

        connection = oracledb.connect(**_connect_kwargs(config))
        connection.call_timeout = config.command_timeout * 1000
        return connection

    def close(self, connection: Any) -> None:
        connection.close()

    def execute(self, connection: Any, sql: str, params: dict[str, Any] | None = None) -> Any:
        cursor = connection.cursor()
        cursor.execute(sql, params or {})
        return cursor


class OracleAsyncAdapter:
    """Asynchronous Oracle adapter using ``oracledb.connect_async``."""

    @property
    def paramstyle(self) -> str:
        return "named"

    async def connect_async(self, config: ConnectionConfig) -> Any:
        import oracledb

        connection = await oracledb.connect_async(**_connect_kwargs(config))
        connection.call_timeout = config.command_timeout * 1000
        return connection

    async def close_async(self, connection: Any) -> None:
        await connection.close()

    async def execute_async(self, connection: Any, sql: str, params: dict[str, Any] | None = None) -> Any:
        cursor = connection.cursor()
        await cursor.execute(sql, params or {})
        return cursor
