"""Type descriptor registry.

Maps a type identity to its ``TypeDescriptor``. The registry is
append-only: a published descriptor is never replaced, mutated or evicted,
so readers never observe partial state.

Construction runs outside the lock and is free of side effects. Under
concurrent first access to the same type more than one descriptor may be
built; ``dict.setdefault`` under the lock publishes exactly one of them and
every caller receives that instance.

Member types are not described during construction. A member's own
descriptor is looked up through the registry on first access of
``MemberDescriptor.member_type``, which keeps self-referential and
mutually referential types finite.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import Any

from rowmap.core.exceptions import MappingError
from rowmap.mapping.accessors import compile_accessor
from rowmap.mapping.annotations import MappingConfig
from rowmap.mapping.descriptor import MemberDescriptor, TypeDescriptor, describe_constructors
from rowmap.mapping.introspect import (
    enumerate_members,
    is_basic,
    is_boolean,
    is_collection,
    is_dictionary,
    is_enum,
    is_float,
    is_frozen,
    is_numeric,
    is_optional,
    is_tuple,
    type_endpoint,
    typename,
)
from rowmap.mapping.resolver import MappingResolver

logger = logging.getLogger(__name__)


class TypeDescriptorRegistry:
    """Thread-safe, append-only cache of type descriptors."""

    def __init__(self) -> None:
        self._descriptors: dict[Any, TypeDescriptor] = {}
        self._configs: dict[Any, MappingConfig] = {}
        self._lock = threading.Lock()
        self._resolver = MappingResolver(self._configs)

    def __contains__(self, tp: object) -> bool:
        return tp in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def register(self, tp: Any, config: MappingConfig) -> None:
        """Attach an explicit mapping configuration to *tp*.

        Raises:
            MappingError: If *tp* has already been described; published
                descriptors never change.
        """
        with self._lock:
            if tp in self._descriptors:
                raise MappingError(
                    f"{typename(tp)} is already described; register its mapping before first use"
                )
            existing = self._configs.get(tp)
            self._configs[tp] = existing.merge(config) if existing is not None else config

    def get_or_create(self, tp: Any) -> TypeDescriptor:
        """Return the descriptor for *tp*, building and publishing it if needed."""
        try:
            descriptor = self._descriptors.get(tp)
        except TypeError as e:
            raise MappingError(f"Cannot describe unhashable type {tp!r}") from e
        if descriptor is not None:
            return descriptor

        built = self._build(tp)
        with self._lock:
            return self._descriptors.setdefault(tp, built)

    def _build(self, tp: Any) -> TypeDescriptor:
        logger.debug("Building type descriptor for %s", typename(tp))
        cls = type_endpoint(tp)
        composite = (
            isinstance(cls, type)
            and not is_basic(cls)
            and not is_collection(cls)
            and not is_dictionary(cls)
        )

        try:
            raw_members = enumerate_members(cls) if composite else []
            mapping = self._resolver.resolve(cls, raw_members)
            frozen = is_frozen(cls) if composite else False

            members: list[MemberDescriptor] = []
            for raw in raw_members:
                accessor = compile_accessor(raw, frozen=frozen)
                resolved = mapping.members[raw.name]
                members.append(
                    MemberDescriptor(
                        name=raw.name,
                        declared_type=raw.declared_type,
                        kind=raw.kind,
                        column_name=resolved.column_name,
                        is_primary_key=resolved.is_primary_key,
                        is_foreign_key=resolved.is_foreign_key,
                        foreign_key_name=resolved.foreign_key_name,
                        is_not_mapped=resolved.is_not_mapped,
                        has_column_annotation=resolved.has_column_annotation,
                        readable=raw.readable,
                        writable=raw.writable,
                        getter=accessor.getter,
                        setter=accessor.setter,
                        compiled=accessor.compiled,
                        display=resolved.display,
                    )
                )
            constructors = describe_constructors(cls) if composite else ()
        except MappingError:
            raise
        except Exception as e:  # noqa: BLE001
            raise MappingError(f"Cannot describe {typename(tp)}: {e}") from e

        by_name = {m.name: m for m in members}
        default_factory = None
        if constructors and constructors[0].parameter_count == 0:
            default_factory = constructors[0].factory

        return TypeDescriptor(
            type=tp,
            cls=cls,
            name=typename(cls),
            table_name=mapping.table_name,
            schema_name=mapping.schema_name,
            members=tuple(members),
            primary_keys=tuple(by_name[n] for n in mapping.primary_keys),
            foreign_keys=tuple(by_name[n] for n in mapping.foreign_keys),
            column_members=tuple(by_name[n] for n in mapping.column_members),
            basic_members=tuple(by_name[n] for n in mapping.basic_members),
            constructors=constructors,
            default_factory=default_factory,
            display=mapping.display,
            is_basic=is_basic(tp),
            is_collection=is_collection(tp),
            is_dictionary=is_dictionary(tp),
            is_tuple=is_tuple(tp),
            is_nullable=is_optional(tp),
            is_numeric=is_numeric(tp),
            is_boolean=is_boolean(tp),
            is_float=is_float(tp),
            is_enum=is_enum(tp),
            _registry=weakref.ref(self),
        )


default_registry = TypeDescriptorRegistry()
"""Process-wide registry, created at import and never invalidated."""


def describe(tp: Any) -> TypeDescriptor:
    """Descriptor for *tp* from the process-wide registry."""
    return default_registry.get_or_create(tp)
