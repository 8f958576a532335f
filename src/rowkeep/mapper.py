"""Row ↔ entity conversion.

The mapper is the only place that knows how Python values look on the
wire for a given backend: UUIDs travel as 36-character text, booleans as
0/1 where the driver has no boolean type, timestamps as ISO-8601 text on
SQLite.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import enum
import functools
import uuid
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any, TypeVar

from rowkeep.dialect import Dialect
from rowkeep.errors import MappingError
from rowkeep.metadata import ColumnDescriptor, EntityDescriptor
from rowkeep.schema import ValueKind

T = TypeVar("T")


@functools.lru_cache(maxsize=None)
def _init_fields(cls: type) -> frozenset[str]:
    return frozenset(f.name for f in dataclasses.fields(cls) if f.init)


class EntityMapper:
    """Converts between result rows, entities and bound parameters."""

    def __init__(self, dialect: Dialect):
        self._dialect = dialect

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    # -- Python → database -------------------------------------------------

    def to_db_value(self, column: ColumnDescriptor, value: Any) -> Any:
        """Convert one Python value to what the driver should bind."""
        if value is None:
            return None
        if isinstance(value, enum.Enum):
            value = value.value

        kind = column.kind
        if kind is ValueKind.UUID:
            return str(value)
        if kind is ValueKind.BOOLEAN:
            return bool(value) if self._dialect.native_boolean else int(bool(value))
        if kind in (ValueKind.TIMESTAMP, ValueKind.DATE):
            if not self._dialect.native_datetime and isinstance(value, dt.date):
                return value.isoformat()
            return value
        if kind is ValueKind.BINARY and isinstance(value, (bytearray, memoryview)):
            return bytes(value)
        if isinstance(value, uuid.UUID):
            return str(value)
        return value

    def to_parameters(
        self,
        descriptor: EntityDescriptor,
        entity: Any,
        columns: Iterable[ColumnDescriptor] | None = None,
    ) -> list[Any]:
        """Bound values for ``columns`` (all columns by default), in order."""
        selected = descriptor.columns if columns is None else columns
        return [self.to_db_value(col, getattr(entity, col.source_field)) for col in selected]

    # -- Database → Python -------------------------------------------------

    def from_db_value(self, column: ColumnDescriptor, value: Any) -> Any:
        """Convert one driver value back to the field's Python type."""
        if value is None:
            return None

        kind = column.kind
        if kind is ValueKind.UUID:
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        if kind is ValueKind.BOOLEAN:
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "t", "yes")
            return bool(value)
        if kind is ValueKind.TIMESTAMP:
            if isinstance(value, dt.datetime):
                return value
            if isinstance(value, dt.date):
                return dt.datetime(value.year, value.month, value.day)
            return dt.datetime.fromisoformat(str(value))
        if kind is ValueKind.DATE:
            if isinstance(value, dt.datetime):
                return value.date()
            if isinstance(value, dt.date):
                return value
            return dt.date.fromisoformat(str(value))
        if kind is ValueKind.BINARY:
            return bytes(value) if isinstance(value, (bytearray, memoryview)) else value
        if kind in (ValueKind.INTEGER, ValueKind.LONG):
            return int(value) if isinstance(value, (Decimal, str)) else value
        if kind in (ValueKind.FLOAT, ValueKind.DOUBLE):
            return float(value) if isinstance(value, (Decimal, str, int)) else value
        return value

    def normalize_key(self, descriptor: EntityDescriptor, key: Any) -> Any:
        """Primary-key value in the form loaded entities carry it.

        ``find(Player, str(player_id))`` and ``find(Player, player_id)`` name
        the same row, so both normalize to the same ``uuid.UUID``. Returns
        ``None`` for a value no stored row can have (e.g. malformed UUID text).
        """
        pk = descriptor.primary_key
        try:
            return self.from_db_value(pk, self.to_db_value(pk, key))
        except (ValueError, TypeError):
            return None

    def to_entity(self, descriptor: EntityDescriptor[T], row: Mapping[str, Any]) -> T:
        """Build an entity from a result row.

        Extra keys in ``row`` are ignored. Column lookup falls back to a
        case-insensitive match for backends that fold unquoted identifiers.

        Raises:
            MappingError: A column is missing or a value cannot be converted.
        """
        folded: dict[str, str] | None = None
        values: dict[str, Any] = {}
        for col in descriptor.columns:
            if col.name in row:
                raw = row[col.name]
            else:
                if folded is None:
                    folded = {key.lower(): key for key in row}
                key = folded.get(col.name.lower())
                if key is None:
                    raise MappingError(
                        f"Result row has no column {col.name!r} for {descriptor.entity_name}"
                    ).with_context(
                        entity=descriptor.entity_name,
                        table=descriptor.table_name,
                        column=col.name,
                        operation="to_entity",
                    )
                raw = row[key]
            try:
                values[col.source_field] = self.from_db_value(col, raw)
            except (ValueError, TypeError) as e:
                raise MappingError(
                    f"Cannot convert column {col.name!r} of {descriptor.table_name}: {e}",
                    cause=e,
                ).with_context(
                    entity=descriptor.entity_name,
                    table=descriptor.table_name,
                    column=col.name,
                    operation="to_entity",
                ) from e

        return self._construct(descriptor, values)

    def _construct(self, descriptor: EntityDescriptor[T], values: dict[str, Any]) -> T:
        cls = descriptor.entity_type
        init_fields = _init_fields(cls)
        try:
            instance = cls(**{k: v for k, v in values.items() if k in init_fields})
        except TypeError as e:
            raise MappingError(
                f"Cannot construct {descriptor.entity_name}: {e}", cause=e
            ).with_context(
                entity=descriptor.entity_name, table=descriptor.table_name, operation="to_entity"
            ) from e
        for name, value in values.items():
            if name not in init_fields:
                object.__setattr__(instance, name, value)
        return instance


__all__ = ["EntityMapper"]
