"""SQL provider options.

``ProviderOptions`` tells the command builder how a backend quotes names,
names parameters, pages results, reads generated identities and renders
literals. Presets are frozen; derive variants with ``model_copy``::

    options = SQLITE_OPTIONS.model_copy(update={"inserted_id_query": None})
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict

from rowmap.core.enums import DatabaseBackend


class ProviderOptions(BaseModel):
    """Dialect settings consumed by ``SqlCommandBuilder``."""

    model_config = ConfigDict(frozen=True)

    name_prefix: str = '"'
    name_suffix: str = '"'
    param_prefix: str = ":"
    inserted_id_query: str | None = None
    insert_returning: bool = False
    true_value: str = "1"
    false_value: str = "0"
    null_value: str = "NULL"
    string_prefix: str = "'"
    string_suffix: str = "'"
    datetime_format: str = "%Y-%m-%d %H:%M:%S"
    date_format: str = "%Y-%m-%d"
    limit_offset_template: str = "OFFSET {offset} ROWS FETCH NEXT {limit} ROWS ONLY"
    statement_terminator: str = ";"

    @classmethod
    def for_backend(cls, backend: DatabaseBackend | str) -> ProviderOptions:
        """Preset options for *backend* (a ``DatabaseBackend`` or driver name)."""
        if isinstance(backend, str):
            try:
                backend = DatabaseBackend(backend.lower())
            except ValueError:
                return DEFAULT_OPTIONS
        return _PRESETS.get(backend, DEFAULT_OPTIONS)

    def quote(self, name: str) -> str:
        """Quote an identifier."""
        return f"{self.name_prefix}{name}{self.name_suffix}"

    def _string(self, text: str) -> str:
        return f"{self.string_prefix}{text.replace(chr(39), chr(39) * 2)}{self.string_suffix}"

    def to_literal(self, value: Any) -> str:
        """Render *value* as an inline SQL literal (diagnostics only)."""
        if value is None:
            return self.null_value
        if isinstance(value, bool):
            return self.true_value if value else self.false_value
        if isinstance(value, enum.Enum):
            inner = value.value
            return self.to_literal(inner) if not isinstance(inner, enum.Enum) else self._string(str(inner))
        if isinstance(value, datetime):
            return self._string(value.strftime(self.datetime_format))
        if isinstance(value, date):
            return self._string(value.strftime(self.date_format))
        if isinstance(value, (time, timedelta, uuid.UUID)):
            return self._string(str(value))
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return f"X'{bytes(value).hex().upper()}'"
        return self._string(str(value))


DEFAULT_OPTIONS = ProviderOptions()

SQLITE_OPTIONS = ProviderOptions(
    inserted_id_query="SELECT last_insert_rowid()",
    limit_offset_template="LIMIT {limit} OFFSET {offset}",
)

POSTGRESQL_OPTIONS = ProviderOptions(
    insert_returning=True,
    true_value="TRUE",
    false_value="FALSE",
    limit_offset_template="LIMIT {limit} OFFSET {offset}",
)

MYSQL_OPTIONS = ProviderOptions(
    name_prefix="`",
    name_suffix="`",
    inserted_id_query="SELECT LAST_INSERT_ID()",
    true_value="TRUE",
    false_value="FALSE",
    limit_offset_template="LIMIT {limit} OFFSET {offset}",
)

ORACLE_OPTIONS = ProviderOptions(
    datetime_format="%Y-%m-%d %H:%M:%S",
    limit_offset_template="OFFSET {offset} ROWS FETCH NEXT {limit} ROWS ONLY",
)

_PRESETS: dict[DatabaseBackend, ProviderOptions] = {
    DatabaseBackend.SQLITE: SQLITE_OPTIONS,
    DatabaseBackend.POSTGRESQL: POSTGRESQL_OPTIONS,
    DatabaseBackend.MYSQL: MYSQL_OPTIONS,
    DatabaseBackend.ORACLE: ORACLE_OPTIONS,
}
