"""Declarative schema surface for entity types.

Entities are plain dataclasses. Persistence metadata rides along in
``dataclasses.field(metadata=...)`` and in a class attribute set by the
:func:`entity` decorator; nothing is discovered by naming convention
except the default table name (lower-cased class name).

This module is the stable contract the rest of the engine depends on.

Examples:
    >>> import uuid
    >>> @entity(table="players", cache_ttl=60, cache_max_size=500)
    ... class Player:
    ...     id: uuid.UUID = primary_key()
    ...     name: str = column(length=32, nullable=False, unique=True, default="")
    ...     level: int = column(nullable=False, default_value="1", default=1)
    ...     session_token: str | None = transient(default=None)

    >>> @entity
    ... class AuditRow:
    ...     row_id: int | None = primary_key(generated=True, default=None)
    ...     message: str = ""
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from dataclasses import MISSING, dataclass
from enum import Enum
from typing import Any, TypeVar, overload

T = TypeVar("T")

METADATA_KEY = "rowkeep"
ENTITY_OPTIONS_ATTR = "__rowkeep_entity__"


class ValueKind(str, Enum):
    """Logical value kind of a column, mapped to SQL types per dialect."""

    INTEGER = "integer"
    LONG = "long"
    FLOAT = "float"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    TEXT = "text"
    BINARY = "binary"
    UUID = "uuid"
    TIMESTAMP = "timestamp"
    DATE = "date"


@dataclass(frozen=True)
class ColumnSpec:
    """Field-level declaration stored in dataclass field metadata."""

    name: str | None = None
    nullable: bool = True
    unique: bool = False
    length: int = 255
    default_value: str | None = None
    column_definition: str | None = None
    kind: ValueKind | None = None
    primary_key: bool = False
    generated: bool = False
    transient: bool = False


@dataclass(frozen=True)
class CachePolicy:
    """Entity cache hint: TTL in seconds and a maximum entry count."""

    ttl_seconds: float
    max_size: int = 1000
    refresh_on_write: bool = True


@dataclass(frozen=True)
class EntityOptions:
    """Class-level declaration set by :func:`entity`."""

    table: str | None = None
    cache: CachePolicy | None = None


TRANSIENT = ColumnSpec(transient=True)


def _field(spec: ColumnSpec, default: Any, default_factory: Any, **kwargs: Any) -> Any:
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        metadata={METADATA_KEY: spec},
        **kwargs,
    )


def column(
    *,
    name: str | None = None,
    nullable: bool = True,
    unique: bool = False,
    length: int = 255,
    default_value: str | None = None,
    column_definition: str | None = None,
    kind: ValueKind | None = None,
    default: Any = MISSING,
    default_factory: Callable[[], Any] | Any = MISSING,
    **field_kwargs: Any,
) -> Any:
    """Declare a persisted column.

    Args:
        name: Column name override (defaults to the field name).
        nullable: Emit ``NOT NULL`` when false.
        unique: Emit ``UNIQUE``.
        length: Length for text columns (``VARCHAR(length)``).
        default_value: SQL literal used as the column ``DEFAULT``.
        column_definition: Full SQL type overriding the kind mapping.
        kind: Explicit :class:`ValueKind` (e.g. ``ValueKind.LONG``).
        default, default_factory: Passed to ``dataclasses.field``.
    """
    spec = ColumnSpec(
        name=name,
        nullable=nullable,
        unique=unique,
        length=length,
        default_value=default_value,
        column_definition=column_definition,
        kind=kind,
    )
    return _field(spec, default, default_factory, **field_kwargs)


def primary_key(
    *,
    name: str | None = None,
    generated: bool = False,
    kind: ValueKind | None = None,
    length: int = 255,
    default: Any = MISSING,
    default_factory: Callable[[], Any] | Any = MISSING,
    **field_kwargs: Any,
) -> Any:
    """Declare the primary-key field.

    ``generated=True`` leaves the key to the backend: inserts skip the
    column and the assigned key is written back onto the entity.
    """
    if generated and default is MISSING and default_factory is MISSING:
        default = None
    spec = ColumnSpec(
        name=name,
        nullable=False,
        unique=True,
        length=length,
        kind=kind,
        primary_key=True,
        generated=generated,
    )
    return _field(spec, default, default_factory, **field_kwargs)


def transient(
    *,
    default: Any = MISSING,
    default_factory: Callable[[], Any] | Any = MISSING,
    **field_kwargs: Any,
) -> Any:
    """Declare a field that is never persisted."""
    return _field(TRANSIENT, default, default_factory, **field_kwargs)


@overload
def entity(cls: type[T], /) -> type[T]: ...


@overload
def entity(
    cls: None = None,
    /,
    *,
    table: str | None = None,
    cache_ttl: float | None = None,
    cache_max_size: int = 1000,
    refresh_on_write: bool = True,
) -> Callable[[type[T]], type[T]]: ...


def entity(
    cls: type[T] | None = None,
    /,
    *,
    table: str | None = None,
    cache_ttl: float | None = None,
    cache_max_size: int = 1000,
    refresh_on_write: bool = True,
) -> Any:
    """Mark a class as a persisted entity.

    Applies ``@dataclass`` when the class is not one already. Usable bare
    (``@entity``) or with options (``@entity(table="players")``).

    Args:
        table: Physical table name (defaults to the lower-cased class name).
        cache_ttl: Enables the entity cache for this type with this TTL (seconds).
        cache_max_size: Maximum cached entries for this type.
        refresh_on_write: Refresh (rather than invalidate) cached entries on writes.
    """
    cache = (
        CachePolicy(ttl_seconds=cache_ttl, max_size=cache_max_size, refresh_on_write=refresh_on_write)
        if cache_ttl is not None
        else None
    )
    options = EntityOptions(table=table, cache=cache)

    def wrap(target: type[T]) -> type[T]:
        if not dataclasses.is_dataclass(target):
            target = dataclass(target)
        setattr(target, ENTITY_OPTIONS_ATTR, options)
        return target

    if cls is not None:
        return wrap(cls)
    return wrap


def is_entity(cls: Any) -> bool:
    """True if ``cls`` was decorated with :func:`entity`."""
    return isinstance(cls, type) and isinstance(
        cls.__dict__.get(ENTITY_OPTIONS_ATTR), EntityOptions
    )


def entity_options(cls: type) -> EntityOptions | None:
    """Options declared directly on ``cls`` (not inherited)."""
    options = cls.__dict__.get(ENTITY_OPTIONS_ATTR)
    return options if isinstance(options, EntityOptions) else None


def column_spec(f: dataclasses.Field) -> ColumnSpec | None:
    """Column declaration attached to a dataclass field, if any."""
    spec = f.metadata.get(METADATA_KEY)
    return spec if isinstance(spec, ColumnSpec) else None


__all__ = [
    "CachePolicy",
    "ColumnSpec",
    "EntityOptions",
    "ValueKind",
    "column",
    "column_spec",
    "entity",
    "entity_options",
    "is_entity",
    "primary_key",
    "transient",
]
