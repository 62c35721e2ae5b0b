"""RowMap exception hierarchy.

All exceptions are RowMap-specific. Raw driver exceptions are never
exposed to callers: the data client wraps them with operation context.
"""

from __future__ import annotations

from typing import Any


class RowMapError(Exception):
    """Base exception for all RowMap errors."""


# --- Mapping ---


class MappingError(RowMapError):
    """Raised when a type cannot produce a usable descriptor or object."""


class ColumnMismatchError(MappingError):
    """Raised when no constructor can be satisfied from row columns."""

    def __init__(self, target_class: str, missing_fields: list[str]) -> None:
        self.target_class = target_class
        self.missing_fields = missing_fields
        super().__init__(f"Cannot map to {target_class}: missing fields {missing_fields}")


# --- Binding ---


class BindingError(RowMapError):
    """Raised when a parameter source cannot be turned into name/value pairs."""

    def __init__(self, source_type: str, detail: str) -> None:
        self.source_type = source_type
        super().__init__(f"Cannot bind parameters from {source_type}: {detail}")


# --- Execution ---


class ExecutionError(RowMapError):
    """Base for command execution errors."""


def _format_params(params: dict[str, Any] | None) -> str:
    if not params:
        return ""
    return ", ".join(f"{name}={value!r}" for name, value in params.items())


class CommandExecutionError(ExecutionError):
    """Raised when the driver fails to execute a built command.

    Carries the exact command text and bound parameters of the failing
    command. The driver exception is chained as ``__cause__``.
    """

    def __init__(
        self,
        method: str,
        sql: str | None,
        params: dict[str, Any] | None,
        detail: str,
    ) -> None:
        self.method = method
        self.sql = sql
        self.params = dict(params or {})
        message = f"Error in {method}: {detail}"
        if sql:
            message += f"\nQuery: {sql}"
        if self.params:
            message += f"\nParameters: {_format_params(self.params)}"
        super().__init__(message)


# --- Transaction ---


class TransactionError(RowMapError):
    """Base for transaction errors."""


class TransactionStateError(TransactionError):
    """Raised on invalid transaction state transitions."""

    def __init__(self, current_state: str, attempted_action: str) -> None:
        self.current_state = current_state
        self.attempted_action = attempted_action
        super().__init__(f"Cannot {attempted_action} transaction in state '{current_state}'")


# --- Adapter ---


class AdapterError(RowMapError):
    """Base for adapter errors."""


class ConnectionError(AdapterError):  # noqa: A001
    """Raised when the underlying connection cannot be opened or closed."""
