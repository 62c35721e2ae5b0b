"""Connection configuration and management.

ConnectionConfig is a Pydantic model for type-safe connection config.
ConnectionManager and AsyncConnectionManager own a single driver connection
each and delegate driver specifics to the adapter protocols.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any

from pydantic import BaseModel

from rowmap.core.enums import DatabaseBackend
from rowmap.core.exceptions import AdapterError, ConnectionError  # noqa: A004

logger = logging.getLogger(__name__)


class ConnectionConfig(BaseModel):
    """Configuration for database connections."""

    driver: str
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str
    command_timeout: int = 30
    keep_open: bool = False
    extra: dict[str, Any] = {}

    @property
    def backend(self) -> DatabaseBackend:
        try:
            return DatabaseBackend(self.driver.lower())
        except ValueError as e:
            raise AdapterError(f"Unsupported database driver: {self.driver}") from e


# Adapter module mapping: driver name → (module_path, sync_class, async_class)
_ADAPTER_MAP: dict[str, tuple[str, str, str]] = {
    "sqlite": ("rowmap.adapters.sqlite", "SqliteSyncAdapter", "SqliteAsyncAdapter"),
    "postgresql": (
        "rowmap.adapters.postgresql",
        "PostgresqlSyncAdapter",
        "PostgresqlAsyncAdapter",
    ),
    "mysql": ("rowmap.adapters.mysql", "MysqlSyncAdapter", "MysqlAsyncAdapter"),
    "oracle": ("rowmap.adapters.oracle", "OracleSyncAdapter", "OracleAsyncAdapter"),
}


def _load_adapter(driver: str, kind: str) -> Any:
    """Load a sync or async adapter by driver name."""
    driver_lower = driver.lower()
    if driver_lower not in _ADAPTER_MAP:
        raise AdapterError(f"Unsupported database driver: {driver}")

    module_path, sync_cls_name, async_cls_name = _ADAPTER_MAP[driver_lower]
    cls_name = sync_cls_name if kind == "sync" else async_cls_name

    try:
        module = importlib.import_module(module_path)
        return getattr(module, cls_name)()
    except (ImportError, AttributeError) as e:
        raise AdapterError(f"Failed to load {kind} adapter for '{driver}': {e}") from e


def _describe(config: ConnectionConfig) -> str:
    if config.host:
        return f"{config.driver}://{config.host}:{config.port or ''}/{config.database}"
    return f"{config.driver}:{config.database}"


class ConnectionManager:
    """Owns one synchronous driver connection, opened on demand."""

    def __init__(self, config: ConnectionConfig, adapter: Any | None = None) -> None:
        self.config = config
        self._adapter = adapter if adapter is not None else _load_adapter(config.driver, "sync")
        self._connection: Any = None

    @property
    def adapter(self) -> Any:
        return self._adapter

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def open(self) -> Any:
        """Return the open connection, connecting first if needed."""
        if self._connection is None:
            try:
                self._connection = self._adapter.connect(self.config)
            except Exception as e:
                raise ConnectionError(f"Cannot open connection to {_describe(self.config)}: {e}") from e
            logger.debug("Opened connection to %s", _describe(self.config))
        return self._connection

    def close(self) -> None:
        """Close the connection if it is open."""
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        try:
            self._adapter.close(connection)
        except Exception as e:
            raise ConnectionError(f"Cannot close connection to {_describe(self.config)}: {e}") from e
        logger.debug("Closed connection to %s", _describe(self.config))


class AsyncConnectionManager:
    """Owns one asynchronous driver connection, opened on demand."""

    def __init__(self, config: ConnectionConfig, adapter: Any | None = None) -> None:
        self.config = config
        self._adapter = adapter if adapter is not None else _load_adapter(config.driver, "async")
        self._connection: Any = None

    @property
    def adapter(self) -> Any:
        return self._adapter

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    async def open(self) -> Any:
        """Return the open connection, connecting first if needed."""
        if self._connection is None:
            try:
                self._connection = await self._adapter.connect_async(self.config)
            except Exception as e:
                raise ConnectionError(f"Cannot open connection to {_describe(self.config)}: {e}") from e
            logger.debug("Opened async connection to %s", _describe(self.config))
        return self._connection

    async def close(self) -> None:
        """Close the connection if it is open."""
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        try:
            await self._adapter.close_async(connection)
        except Exception as e:
            raise ConnectionError(f"Cannot close connection to {_describe(self.config)}: {e}") from e
        logger.debug("Closed async connection to %s", _describe(self.config))
