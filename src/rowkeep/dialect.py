"""SQL dialect abstraction for the supported backends.

Every SQL fragment whose spelling differs between backends (placeholders,
column types, generated-key DDL, upserts, catalog queries) comes from a
``Dialect``. The CRUD engine, query builder and batch engine assemble
statements from these fragments and never mention a specific backend.

Architecture::

    ┌──────────────┐  ┌──────────────────┐  ┌──────────────────────┐
    │ SQLite       │  │ PostgreSQL       │  │ MySQL / MariaDB      │
    │ ?, ?, ?      │  │ %s, %s, %s       │  │ %s, %s, %s           │
    │ AUTOINCREMENT│  │ IDENTITY         │  │ AUTO_INCREMENT       │
    │ lastrowid    │  │ RETURNING        │  │ lastrowid            │
    └──────────────┘  └──────────────────┘  └──────────────────────┘

Examples:
    >>> from rowkeep.dialect import get_dialect
    >>> d = get_dialect("sqlite")
    >>> d.placeholders(3)
    '?, ?, ?'

Guardrails:
    Dialect methods interpolate table and column names directly. Callers
    pass only names that came from an ``EntityDescriptor`` (validated at
    build time) or that went through :mod:`rowkeep.sanitizer`.

Tags:
    dialect, sql, portability, ddl, rowkeep
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from rowkeep.schema import ValueKind
from rowkeep.types import DatabaseType

if TYPE_CHECKING:
    from rowkeep.metadata import ColumnDescriptor


@runtime_checkable
class Dialect(Protocol):
    """SQL dialect contract."""

    @property
    def name(self) -> str:
        """Human-readable dialect name (e.g. ``'sqlite'``)."""
        ...

    @property
    def native_datetime(self) -> bool:
        """Whether the driver binds and returns ``datetime`` values natively."""
        ...

    @property
    def native_boolean(self) -> bool:
        """Whether the driver returns ``bool`` for boolean columns."""
        ...

    def placeholder(self, index: int) -> str:
        """Single positional placeholder (0-based index)."""
        ...

    def placeholders(self, count: int) -> str:
        """Comma-separated placeholder list."""
        ...

    def column_type(self, column: ColumnDescriptor) -> str:
        """SQL type for a column, honouring ``column_definition`` overrides."""
        ...

    def primary_key_definition(self, column: ColumnDescriptor) -> str:
        """Type plus ``PRIMARY KEY`` and the generated-key strategy."""
        ...

    def returning_clause(self, column: ColumnDescriptor) -> str:
        """Suffix that returns a generated key from ``INSERT`` (``''`` if unused)."""
        ...

    def upsert(self, table: str, columns: list[str], key_columns: list[str]) -> str:
        """Atomic insert-or-update statement with placeholders."""
        ...

    def limit_offset(self, limit: int | None, offset: int | None) -> str:
        """``LIMIT``/``OFFSET`` suffix (``''`` when both are ``None``)."""
        ...

    def table_exists_query(self) -> str:
        """Catalog query taking the table name as its single parameter."""
        ...

    def ping_query(self) -> str:
        """Cheap statement used to validate a connection."""
        ...


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class _BaseDialect:
    """Shared pieces: ``%s`` placeholders, paging and the common type map."""

    _types: dict[ValueKind, str] = {
        ValueKind.INTEGER: "INTEGER",
        ValueKind.LONG: "BIGINT",
        ValueKind.FLOAT: "FLOAT",
        ValueKind.DOUBLE: "DOUBLE",
        ValueKind.BOOLEAN: "BOOLEAN",
        ValueKind.UUID: "VARCHAR(36)",
        ValueKind.BINARY: "BLOB",
        ValueKind.TIMESTAMP: "TIMESTAMP",
        ValueKind.DATE: "DATE",
    }

    native_datetime = True
    native_boolean = True

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "%s"

    def placeholders(self, count: int) -> str:
        return ", ".join(self.placeholder(i) for i in range(count))

    def column_type(self, column: ColumnDescriptor) -> str:
        if column.column_definition:
            return column.column_definition
        if column.kind is ValueKind.TEXT:
            return f"VARCHAR({column.length})"
        return self._types[column.kind]

    def returning_clause(self, column: ColumnDescriptor) -> str:  # noqa: ARG002
        return ""

    # Used when OFFSET appears without LIMIT on backends that need both.
    _unbounded_limit: str | None = None

    def limit_offset(self, limit: int | None, offset: int | None) -> str:
        parts = []
        if limit is not None:
            parts.append(f"LIMIT {int(limit)}")
        elif offset is not None and self._unbounded_limit:
            parts.append(f"LIMIT {self._unbounded_limit}")
        if offset is not None:
            parts.append(f"OFFSET {int(offset)}")
        return " ".join(parts)

    def ping_query(self) -> str:
        return "SELECT 1"

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class SQLiteDialect(_BaseDialect):
    """SQLite dialect: ``?`` placeholders, ``INTEGER PRIMARY KEY AUTOINCREMENT``.

    ``sqlite3`` has no boolean type and its datetime adapters are
    deprecated, so the mapper stores booleans as 0/1 and timestamps as
    ISO-8601 text.
    """

    native_datetime = False
    native_boolean = False
    _unbounded_limit = "-1"

    @property
    def name(self) -> str:
        return "sqlite"

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "?"

    def primary_key_definition(self, column: ColumnDescriptor) -> str:
        if column.is_generated_key:
            # AUTOINCREMENT is only legal on exactly "INTEGER PRIMARY KEY".
            return "INTEGER PRIMARY KEY AUTOINCREMENT"
        return f"{self.column_type(column)} PRIMARY KEY"

    def upsert(self, table: str, columns: list[str], key_columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        keys = ", ".join(key_columns)
        update_cols = [c for c in columns if c not in key_columns]
        if not update_cols:
            return f"INSERT INTO {table} ({cols}) VALUES ({ph}) ON CONFLICT ({keys}) DO NOTHING"
        updates = ", ".join(f"{c} = excluded.{c}" for c in update_cols)
        return (
            f"INSERT INTO {table} ({cols}) VALUES ({ph}) "
            f"ON CONFLICT ({keys}) DO UPDATE SET {updates}"
        )

    def table_exists_query(self) -> str:
        return "SELECT name FROM sqlite_master WHERE type='table' AND name = ?"


class PostgreSQLDialect(_BaseDialect):
    """PostgreSQL dialect: ``%s`` placeholders (psycopg2), identity keys, ``RETURNING``."""

    _types = {
        **_BaseDialect._types,
        ValueKind.FLOAT: "REAL",
        ValueKind.DOUBLE: "DOUBLE PRECISION",
        ValueKind.BINARY: "BYTEA",
    }

    @property
    def name(self) -> str:
        return "postgresql"

    def primary_key_definition(self, column: ColumnDescriptor) -> str:
        if column.is_generated_key:
            base = "BIGINT" if column.kind is ValueKind.LONG else "INTEGER"
            return f"{base} GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY"
        return f"{self.column_type(column)} PRIMARY KEY"

    def returning_clause(self, column: ColumnDescriptor) -> str:
        return f" RETURNING {column.name}"

    def upsert(self, table: str, columns: list[str], key_columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        keys = ", ".join(key_columns)
        update_cols = [c for c in columns if c not in key_columns]
        if not update_cols:
            return f"INSERT INTO {table} ({cols}) VALUES ({ph}) ON CONFLICT ({keys}) DO NOTHING"
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in update_cols)
        return (
            f"INSERT INTO {table} ({cols}) VALUES ({ph}) "
            f"ON CONFLICT ({keys}) DO UPDATE SET {updates}"
        )

    def table_exists_query(self) -> str:
        return (
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = lower(%s)"
        )


class MySQLDialect(_BaseDialect):
    """MySQL dialect: ``%s`` placeholders (mysql-connector), ``AUTO_INCREMENT``.

    Also serves MariaDB, which shares the wire protocol and DDL.
    """

    _types = {
        **_BaseDialect._types,
        ValueKind.INTEGER: "INT",
        ValueKind.TIMESTAMP: "DATETIME(6)",
    }
    _unbounded_limit = "18446744073709551615"

    def __init__(self, name: str = "mysql") -> None:
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def primary_key_definition(self, column: ColumnDescriptor) -> str:
        if column.is_generated_key:
            base = "BIGINT" if column.kind is ValueKind.LONG else "INT"
            return f"{base} PRIMARY KEY AUTO_INCREMENT"
        return f"{self.column_type(column)} PRIMARY KEY"

    def upsert(self, table: str, columns: list[str], key_columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        update_cols = [c for c in columns if c not in key_columns] or key_columns[:1]
        updates = ", ".join(f"{c} = VALUES({c})" for c in update_cols)
        return (
            f"INSERT INTO {table} ({cols}) VALUES ({ph}) "
            f"ON DUPLICATE KEY UPDATE {updates}"
        )

    def table_exists_query(self) -> str:
        return (
            "SELECT TABLE_NAME FROM INFORMATION_SCHEMA.TABLES "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s"
        )


# =========================================================================
# Registry / Factory
# =========================================================================

# Dialects are stateless, so one instance per backend is shared.
_DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLiteDialect(),
    "postgresql": PostgreSQLDialect(),
    "postgres": PostgreSQLDialect(),  # alias
    "mysql": MySQLDialect(),
    "mariadb": MySQLDialect("mariadb"),
}


def get_dialect(db_type: str | DatabaseType) -> Dialect:
    """Get a dialect by backend name or :class:`DatabaseType`.

    Raises:
        ValueError: If ``db_type`` is not recognised.
    """
    key = db_type.value if isinstance(db_type, DatabaseType) else str(db_type).lower()
    if key not in _DIALECTS:
        raise ValueError(
            f"Unknown dialect '{db_type}'. "
            f"Supported: {sorted(set(_DIALECTS) - {'postgres'})}"
        )
    return _DIALECTS[key]


def register_dialect(name: str, dialect: Dialect) -> None:
    """Register a custom dialect implementation (e.g. a test double)."""
    _DIALECTS[name.lower()] = dialect


__all__ = [
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "MySQLDialect",
    "get_dialect",
    "register_dialect",
]
