"""Transaction handles.

A handle is returned by ``DataClient.begin_transaction`` and passed
explicitly to the operations that should run inside it. Used as a context
manager it commits on success and rolls back on exception.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable

from rowmap.core.exceptions import TransactionStateError

logger = logging.getLogger(__name__)


class _TxState(Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction:
    """Synchronous transaction bound to one open connection."""

    def __init__(
        self,
        connection: Any,
        on_finish: Callable[[Transaction], None] | None = None,
    ) -> None:
        self._connection = connection
        self._on_finish = on_finish
        self._state = _TxState.ACTIVE
        logger.debug("Transaction %x started", id(self))

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def is_active(self) -> bool:
        return self._state is _TxState.ACTIVE

    @property
    def connection(self) -> Any:
        """The connection commands of this transaction run on."""
        self._check_active("execute")
        return self._connection

    def __enter__(self) -> Transaction:
        self._check_active("enter")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if self._state is not _TxState.ACTIVE:
            return
        if exc_type is None:
            self.commit()
            return
        try:
            self.rollback()
        except Exception:
            logger.warning("Rollback failed while handling %s", exc_type.__name__, exc_info=True)

    def commit(self) -> None:
        """Commit and release the connection."""
        self._check_active("commit")
        try:
            self._connection.commit()
            self._state = _TxState.COMMITTED
            logger.debug("Transaction %x committed", id(self))
        except Exception:
            # A failed COMMIT may leave the driver transaction open.
            try:
                self._connection.rollback()
            except Exception:
                logger.warning("Rollback after failed commit of %x did not succeed", id(self), exc_info=True)
            self._state = _TxState.ROLLED_BACK
            raise
        finally:
            self._finish()

    def rollback(self) -> None:
        """Roll back and release the connection."""
        self._check_active("rollback")
        self._state = _TxState.ROLLED_BACK
        try:
            self._connection.rollback()
            logger.debug("Transaction %x rolled back", id(self))
        finally:
            self._finish()

    def _finish(self) -> None:
        if self._on_finish is not None:
            on_finish, self._on_finish = self._on_finish, None
            on_finish(self)

    def _check_active(self, action: str) -> None:
        if self._state is not _TxState.ACTIVE:
            raise TransactionStateError(self._state.value, action)


class AsyncTransaction:
    """Asynchronous transaction bound to one open connection."""

    def __init__(
        self,
        connection: Any,
        on_finish: Callable[[AsyncTransaction], Awaitable[None]] | None = None,
    ) -> None:
        self._connection = connection
        self._on_finish = on_finish
        self._state = _TxState.ACTIVE
        logger.debug("Async transaction %x started", id(self))

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def is_active(self) -> bool:
        return self._state is _TxState.ACTIVE

    @property
    def connection(self) -> Any:
        """The connection commands of this transaction run on."""
        self._check_active("execute")
        return self._connection

    async def __aenter__(self) -> AsyncTransaction:
        self._check_active("enter")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if self._state is not _TxState.ACTIVE:
            return
        if exc_type is None:
            await self.commit()
            return
        try:
            await self.rollback()
        except Exception:
            logger.warning("Rollback failed while handling %s", exc_type.__name__, exc_info=True)

    async def commit(self) -> None:
        """Commit and release the connection."""
        self._check_active("commit")
        try:
            await self._connection.commit()
            self._state = _TxState.COMMITTED
            logger.debug("Async transaction %x committed", id(self))
        except Exception:
            try:
                await self._connection.rollback()
            except Exception:
                logger.warning(
                    "Rollback after failed commit of %x did not succeed", id(self), exc_info=True
                )
            self._state = _TxState.ROLLED_BACK
            raise
        finally:
            await self._finish()

    async def rollback(self) -> None:
        """Roll back and release the connection."""
        self._check_active("rollback")
        self._state = _TxState.ROLLED_BACK
        try:
            await self._connection.rollback()
            logger.debug("Async transaction %x rolled back", id(self))
        finally:
            await self._finish()

    async def _finish(self) -> None:
        if self._on_finish is not None:
            on_finish, self._on_finish = self._on_finish, None
            await on_finish(self)

    def _check_active(self, action: str) -> None:
        if self._state is not _TxState.ACTIVE:
            raise TransactionStateError(self._state.value, action)
