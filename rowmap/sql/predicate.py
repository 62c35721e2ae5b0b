"""Row filters accepted by the data client.

A filter is either a mapping of member name to value (equality, joined with
AND) or a ``Where`` holding a raw SQL condition and its own parameters::

    client.to_list(Person, {"last_name": "Smith"})
    client.to_list(Person, Where("age > :min_age", min_age=30))
    client.to_list(Person, Where("age > :a", a=30) & Where("name LIKE :n", n="J%"))
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Union


class Where:
    """Raw SQL condition with named parameters."""

    __slots__ = ("text", "params")

    def __init__(self, text: str, params: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        if not text or not text.strip():
            raise ValueError("Where condition must not be empty")
        self.text = text.strip()
        self.params: dict[str, Any] = {**(params or {}), **kwargs}

    def _combine(self, other: Where, op: str) -> Where:
        clash = self.params.keys() & other.params.keys()
        conflicting = [k for k in clash if self.params[k] != other.params[k]]
        if conflicting:
            raise ValueError(f"Conflicting values for parameters: {', '.join(sorted(conflicting))}")
        return Where(f"({self.text}) {op} ({other.text})", {**self.params, **other.params})

    def __and__(self, other: Where) -> Where:
        return self._combine(other, "AND")

    def __or__(self, other: Where) -> Where:
        return self._combine(other, "OR")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Where):
            return NotImplemented
        return self.text == other.text and self.params == other.params

    def __hash__(self) -> int:
        return hash(self.text)

    def __repr__(self) -> str:
        return f"Where({self.text!r}, {self.params!r})"


Predicate = Union[Where, Mapping[str, Any], None]
