"""
Build-once persistence metadata for entity types.

``MetadataCache.describe(Player)`` inspects the dataclass once (fields,
type hints, column declarations, primary key) and publishes an immutable
:class:`EntityDescriptor`. Every later call for the same type is a plain
dictionary lookup with no locking.

Manifesto:
    Field enumeration and type-hint resolution are the expensive part of
    every ORM call. Doing them once per type, and validating identifiers
    at the same time, means the hot path only ever touches frozen data.

    - **Publish-once:** descriptors are fully built before they become visible
    - **Discover-once:** concurrent first calls for one type run discovery once
    - **Instance-owned:** each ``Database`` owns its own cache (no globals)
    - **Fail early:** bad declarations raise ``ConfigurationError`` at first use

Architecture:
    ::

        describe(Player)
          │
          ├── _descriptors[Player] hit? ──► return (lock-free)
          │
          └── miss: per-type lock
                ├── re-check (another thread may have published)
                ├── _discover(Player)  → EntityDescriptor (frozen)
                └── _descriptors[Player] = descriptor   (publish)

Tags:
    metadata, reflection, cache, dataclasses, rowkeep
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import threading
import types
import typing
import uuid
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from rowkeep.errors import ConfigurationError
from rowkeep.logging import get_logger
from rowkeep.sanitizer import validate_identifier
from rowkeep.schema import CachePolicy, ColumnSpec, ValueKind, column_spec, entity_options, is_entity

logger = get_logger(__name__)

T = TypeVar("T")

_KIND_BY_TYPE: dict[Any, ValueKind] = {
    bool: ValueKind.BOOLEAN,
    int: ValueKind.INTEGER,
    float: ValueKind.DOUBLE,
    str: ValueKind.TEXT,
    bytes: ValueKind.BINARY,
    bytearray: ValueKind.BINARY,
    uuid.UUID: ValueKind.UUID,
    dt.datetime: ValueKind.TIMESTAMP,
    dt.date: ValueKind.DATE,
}


@dataclass(frozen=True)
class ColumnDescriptor:
    """Physical description of one persisted column."""

    name: str
    source_field: str
    kind: ValueKind
    nullable: bool = True
    unique: bool = False
    length: int = 255
    default_value: str | None = None
    column_definition: str | None = None
    is_primary_key: bool = False
    is_generated_key: bool = False


@dataclass(frozen=True)
class EntityDescriptor(Generic[T]):
    """Immutable table description for one entity type."""

    entity_type: type[T]
    table_name: str
    columns: tuple[ColumnDescriptor, ...]
    primary_key: ColumnDescriptor
    cache_policy: CachePolicy | None = None

    @property
    def entity_name(self) -> str:
        return self.entity_type.__name__

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    @property
    def insert_columns(self) -> tuple[ColumnDescriptor, ...]:
        """Columns written by ``INSERT`` (generated keys excluded)."""
        return tuple(c for c in self.columns if not c.is_generated_key)

    @property
    def update_columns(self) -> tuple[ColumnDescriptor, ...]:
        """Columns written by ``UPDATE ... SET`` (primary key excluded)."""
        return tuple(c for c in self.columns if not c.is_primary_key)

    def column(self, name: str) -> ColumnDescriptor | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def has_column(self, name: str) -> bool:
        return self.column(name) is not None

    def key_of(self, entity: Any) -> Any:
        """Primary-key value of ``entity``."""
        return getattr(entity, self.primary_key.source_field)


class MetadataCache:
    """Per-instance registry of entity descriptors.

    Example:
        >>> cache = MetadataCache()
        >>> d = cache.describe(Player)
        >>> d.table_name, d.primary_key.name
        ('players', 'id')
        >>> cache.describe(Player) is d
        True
    """

    def __init__(self) -> None:
        self._descriptors: dict[type, EntityDescriptor] = {}
        self._locks: dict[type, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._discoveries = 0

    @property
    def discoveries(self) -> int:
        """Number of times full discovery has run."""
        return self._discoveries

    def __len__(self) -> int:
        return len(self._descriptors)

    def is_described(self, entity_type: type) -> bool:
        return entity_type in self._descriptors

    def describe(self, entity_type: type[T]) -> EntityDescriptor[T]:
        """Return the descriptor for ``entity_type``, discovering it on first use.

        Raises:
            ConfigurationError: The type is not an ``@entity`` dataclass, has
                zero or several primary keys, or declares unsafe names.
        """
        descriptor = self._descriptors.get(entity_type)
        if descriptor is not None:
            return descriptor

        with self._lock_for(entity_type):
            descriptor = self._descriptors.get(entity_type)
            if descriptor is None:
                descriptor = self._discover(entity_type)
                with self._locks_guard:
                    self._discoveries += 1
                self._descriptors[entity_type] = descriptor
                logger.debug(
                    "metadata.described",
                    entity=entity_type.__name__,
                    table=descriptor.table_name,
                    columns=len(descriptor.columns),
                )
        return descriptor

    def _lock_for(self, entity_type: type) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(entity_type)
            if lock is None:
                lock = self._locks[entity_type] = threading.Lock()
            return lock

    # -- Discovery ---------------------------------------------------------

    def _discover(self, entity_type: type) -> EntityDescriptor:
        name = getattr(entity_type, "__name__", repr(entity_type))
        if not is_entity(entity_type):
            raise ConfigurationError(
                f"{name} is not an entity; decorate it with @entity"
            ).with_context(entity=name)

        options = entity_options(entity_type)
        table_name = (options.table if options and options.table else name.lower())
        if not validate_identifier(table_name):
            raise ConfigurationError(
                f"Invalid table name {table_name!r} on {name}"
            ).with_context(entity=name, table=table_name)

        try:
            hints = typing.get_type_hints(entity_type, include_extras=True)
        except Exception as e:
            raise ConfigurationError(
                f"Cannot resolve type hints of {name}: {e}", cause=e
            ).with_context(entity=name) from e

        columns: list[ColumnDescriptor] = []
        for f in dataclasses.fields(entity_type):
            spec = column_spec(f)
            if f.name.startswith("_") or (spec is not None and spec.transient):
                continue
            columns.append(self._describe_column(name, f, hints.get(f.name, Any), spec or ColumnSpec()))

        primary_keys = [c for c in columns if c.is_primary_key]
        if len(primary_keys) != 1:
            raise ConfigurationError(
                f"{name} must declare exactly one primary key, found {len(primary_keys)}"
            ).with_context(entity=name, table=table_name)

        seen: set[str] = set()
        for col in columns:
            if col.name in seen:
                raise ConfigurationError(
                    f"Duplicate column name {col.name!r} on {name}"
                ).with_context(entity=name, table=table_name, column=col.name)
            seen.add(col.name)

        return EntityDescriptor(
            entity_type=entity_type,
            table_name=table_name,
            columns=tuple(columns),
            primary_key=primary_keys[0],
            cache_policy=options.cache if options else None,
        )

    def _describe_column(
        self, entity_name: str, f: dataclasses.Field, hint: Any, spec: ColumnSpec
    ) -> ColumnDescriptor:
        column_name = spec.name or f.name
        if not validate_identifier(column_name):
            raise ConfigurationError(
                f"Invalid column name {column_name!r} on {entity_name}.{f.name}"
            ).with_context(entity=entity_name, column=column_name)

        inferred_kind, _ = resolve_kind(hint)
        kind = spec.kind or inferred_kind
        if spec.generated and kind not in (ValueKind.INTEGER, ValueKind.LONG):
            raise ConfigurationError(
                f"Generated key {entity_name}.{f.name} must be an integer column"
            ).with_context(entity=entity_name, column=column_name)

        return ColumnDescriptor(
            name=column_name,
            source_field=f.name,
            kind=kind,
            nullable=False if spec.primary_key else spec.nullable,
            unique=spec.unique,
            length=spec.length,
            default_value=spec.default_value,
            column_definition=spec.column_definition,
            is_primary_key=spec.primary_key,
            is_generated_key=spec.generated,
        )


def resolve_kind(hint: Any) -> tuple[ValueKind, bool]:
    """Map a type annotation to ``(ValueKind, is_optional)``.

    ``X | None`` / ``Optional[X]`` unwrap to ``X``; ``Annotated[X, kind]``
    uses the first :class:`ValueKind` found in its metadata. Unknown types
    map to ``TEXT``.
    """
    origin = typing.get_origin(hint)

    if origin is typing.Annotated:
        base, *extras = typing.get_args(hint)
        kind, optional = resolve_kind(base)
        for extra in extras:
            if isinstance(extra, ValueKind):
                kind = extra
                break
        return kind, optional

    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        optional = len(args) != len(typing.get_args(hint))
        if len(args) == 1:
            kind, _ = resolve_kind(args[0])
            return kind, optional
        return ValueKind.TEXT, optional

    return _KIND_BY_TYPE.get(hint, ValueKind.TEXT), False


__all__ = [
    "ColumnDescriptor",
    "EntityDescriptor",
    "MetadataCache",
    "resolve_kind",
]
