"""Descriptor provider protocol.

The data client, parameter binder and materializer depend on this
interface rather than on the process-wide registry, so tests can pass a
fresh registry or a hand-built double.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from rowmap.mapping.descriptor import TypeDescriptor


@runtime_checkable
class DescriptorProvider(Protocol):
    """Source of type descriptors."""

    def get_or_create(self, tp: Any) -> TypeDescriptor:
        """Return the descriptor for *tp*, building it on first access."""
        ...
