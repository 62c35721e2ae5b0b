"""Database adapter protocols.

Every adapter module implements both protocols with identical public
interfaces, so the data clients never branch on the driver.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from rowmap.core.connection import ConnectionConfig


@runtime_checkable
class SyncAdapter(Protocol):
    """Synchronous database adapter protocol."""

    @property
    def paramstyle(self) -> str:
        """Parameter binding style: 'named' (:name) or 'pyformat' (%(name)s)."""
        ...

    def connect(self, config: ConnectionConfig) -> Any:
        """Open a driver connection with transactions under caller control."""
        ...

    def close(self, connection: Any) -> None:
        """Close a driver connection."""
        ...

    def execute(
        self,
        connection: Any,
        sql: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Execute SQL and return a cursor-like object."""
        ...


@runtime_checkable
class AsyncAdapter(Protocol):
    """Asynchronous database adapter protocol."""

    @property
    def paramstyle(self) -> str:
        """Parameter binding style: 'named' (:name) or 'pyformat' (%(name)s)."""
        ...

    async def connect_async(self, config: ConnectionConfig) -> Any:
        """Open an async driver connection with transactions under caller control."""
        ...

    async def close_async(self, connection: Any) -> None:
        """Close an async driver connection."""
        ...

    async def execute_async(
        self,
        connection: Any,
        sql: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Execute SQL asynchronously and return a cursor-like object."""
        ...
