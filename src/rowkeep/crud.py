"""
Generic CRUD over described entity types.

``CrudEngine`` turns an :class:`~rowkeep.metadata.EntityDescriptor` into
parameterized statements and runs them on its executor: the
:class:`~rowkeep.connection.ConnectionManager` for the autocommit path, or
a :class:`~rowkeep.transaction.Transaction` via :meth:`CrudEngine.bind`.

Every identifier that reaches SQL text here comes from a descriptor,
validated when the descriptor was built. Values are always bound.

Save semantics:
    ``save()`` checks for the key and then updates or inserts. Two callers
    saving the same new key at the same time can both see "absent" and one
    insert then fails with :class:`~rowkeep.errors.IntegrityError`. Use
    ``upsert()`` where that matters.

Tags:
    crud, orm, sql-generation, rowkeep
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from rowkeep.errors import ConfigurationError, DatabaseError
from rowkeep.logging import get_logger
from rowkeep.mapper import EntityMapper
from rowkeep.metadata import ColumnDescriptor, EntityDescriptor, MetadataCache
from rowkeep.query import QueryBuilder
from rowkeep.sanitizer import require_identifier

logger = get_logger(__name__)

T = TypeVar("T")

# Literals accepted as a column DEFAULT: numbers, NULL, booleans,
# CURRENT_TIMESTAMP, or a single-quoted string without quotes or semicolons.
_DEFAULT_LITERAL = re.compile(
    r"-?\d+(\.\d+)?|NULL|TRUE|FALSE|CURRENT_TIMESTAMP|'[^';]*'",
    re.IGNORECASE,
)


class CrudEngine:
    """Create, read, update and delete entities on one executor."""

    def __init__(self, executor: Any, metadata: MetadataCache, mapper: EntityMapper):
        self._executor = executor
        self._metadata = metadata
        self._mapper = mapper
        self._dialect = mapper.dialect

    @property
    def executor(self) -> Any:
        return self._executor

    @property
    def metadata(self) -> MetadataCache:
        return self._metadata

    @property
    def mapper(self) -> EntityMapper:
        return self._mapper

    def bind(self, executor: Any) -> CrudEngine:
        """Same engine, running on ``executor`` (typically a Transaction)."""
        return CrudEngine(executor, self._metadata, self._mapper)

    def describe(self, entity_type: type[T]) -> EntityDescriptor[T]:
        return self._metadata.describe(entity_type)

    @contextmanager
    def _annotate(self, descriptor: EntityDescriptor, operation: str) -> Iterator[None]:
        try:
            yield
        except DatabaseError as e:
            e.with_context(entity=descriptor.entity_name, table=descriptor.table_name, operation=operation)
            raise

    def _key_param(self, descriptor: EntityDescriptor, key: Any) -> list[Any]:
        return [self._mapper.to_db_value(descriptor.primary_key, key)]

    def _pk_clause(self, descriptor: EntityDescriptor, index: int = 0) -> str:
        return f"{descriptor.primary_key.name} = {self._dialect.placeholder(index)}"

    # -- Read --------------------------------------------------------------

    def find(self, entity_type: type[T], key: Any) -> T | None:
        """Load one entity by primary key; ``None`` when no row matches."""
        d = self.describe(entity_type)
        sql = f"SELECT {', '.join(d.column_names)} FROM {d.table_name} WHERE {self._pk_clause(d)}"
        with self._annotate(d, "find"):
            row = self._executor.query_one(sql, self._key_param(d, key))
        return self._mapper.to_entity(d, row) if row is not None else None

    def find_all(self, entity_type: type[T]) -> list[T]:
        d = self.describe(entity_type)
        with self._annotate(d, "find_all"):
            rows = self._executor.query(f"SELECT {', '.join(d.column_names)} FROM {d.table_name}")
        return [self._mapper.to_entity(d, row) for row in rows]

    def exists(self, entity_type: type, key: Any) -> bool:
        d = self.describe(entity_type)
        sql = f"SELECT 1 FROM {d.table_name} WHERE {self._pk_clause(d)}"
        with self._annotate(d, "exists"):
            return self._executor.query_one(sql, self._key_param(d, key)) is not None

    def count(self, entity_type: type) -> int:
        d = self.describe(entity_type)
        with self._annotate(d, "count"):
            return int(self._executor.scalar(f"SELECT COUNT(*) FROM {d.table_name}") or 0)

    def select(self, entity_type: type[T]) -> QueryBuilder[T]:
        return QueryBuilder(self.describe(entity_type), self._executor, self._mapper)

    # -- Write -------------------------------------------------------------

    def insert_sql(self, descriptor: EntityDescriptor) -> str:
        """``INSERT`` for all non-generated columns."""
        columns = descriptor.insert_columns
        if not columns:
            return f"INSERT INTO {descriptor.table_name} DEFAULT VALUES"
        return (
            f"INSERT INTO {descriptor.table_name} ({', '.join(c.name for c in columns)}) "
            f"VALUES ({self._dialect.placeholders(len(columns))})"
        )

    def update_sql(self, descriptor: EntityDescriptor) -> str:
        """``UPDATE`` of every non-key column, key as the last parameter."""
        columns = descriptor.update_columns
        assignments = ", ".join(
            f"{c.name} = {self._dialect.placeholder(i)}" for i, c in enumerate(columns)
        )
        return (
            f"UPDATE {descriptor.table_name} SET {assignments} "
            f"WHERE {self._pk_clause(descriptor, len(columns))}"
        )

    def delete_sql(self, descriptor: EntityDescriptor) -> str:
        return f"DELETE FROM {descriptor.table_name} WHERE {self._pk_clause(descriptor)}"

    def insert(self, entity: Any) -> Any:
        """Insert ``entity`` and return its primary key.

        A generated key is read back from the backend and written onto the
        entity.
        """
        d = self.describe(type(entity))
        sql = self.insert_sql(d)
        params = self._mapper.to_parameters(d, entity, d.insert_columns)
        pk = d.primary_key

        with self._annotate(d, "insert"):
            if not pk.is_generated_key:
                self._executor.execute(sql, params)
                return d.key_of(entity)

            returning = self._dialect.returning_clause(pk)
            raw_key = self._executor.execute_insert(sql + returning, params, returning=bool(returning))

        key = self._mapper.from_db_value(pk, raw_key)
        object.__setattr__(entity, pk.source_field, key)
        logger.debug("crud.inserted", table=d.table_name, key=key)
        return key

    def update(self, entity: Any) -> bool:
        """Write every non-key column; ``True`` if a row matched the key."""
        d = self.describe(type(entity))
        if not d.update_columns:
            return self.exists(type(entity), d.key_of(entity))
        params = self._mapper.to_parameters(d, entity, d.update_columns)
        params.extend(self._key_param(d, d.key_of(entity)))
        with self._annotate(d, "update"):
            return self._executor.execute(self.update_sql(d), params) > 0

    def save(self, entity: T) -> T:
        """Update when the key exists, insert otherwise. Returns ``entity``.

        A ``None`` key goes straight to insert.
        """
        d = self.describe(type(entity))
        key = d.key_of(entity)
        if key is not None and self.exists(type(entity), key):
            self.update(entity)
        else:
            self.insert(entity)
        return entity

    def upsert(self, entity: T) -> T:
        """Atomic insert-or-update through the backend's conflict clause.

        Entities with a generated key that is still ``None`` are inserted.
        """
        d = self.describe(type(entity))
        if d.primary_key.is_generated_key and d.key_of(entity) is None:
            self.insert(entity)
            return entity
        sql = self._dialect.upsert(d.table_name, list(d.column_names), [d.primary_key.name])
        with self._annotate(d, "upsert"):
            self._executor.execute(sql, self._mapper.to_parameters(d, entity))
        return entity

    def delete(self, entity: Any) -> bool:
        d = self.describe(type(entity))
        return self.delete_by_id(type(entity), d.key_of(entity))

    def delete_by_id(self, entity_type: type, key: Any) -> bool:
        """Delete by primary key; ``True`` only if a row was removed."""
        d = self.describe(entity_type)
        with self._annotate(d, "delete"):
            return self._executor.execute(self.delete_sql(d), self._key_param(d, key)) > 0

    # -- Schema ------------------------------------------------------------

    def create_table_sql(self, entity_type: type) -> str:
        d = self.describe(entity_type)
        definitions = [self._column_definition(d, col) for col in d.columns]
        return f"CREATE TABLE IF NOT EXISTS {d.table_name} ({', '.join(definitions)})"

    def _column_definition(self, d: EntityDescriptor, col: ColumnDescriptor) -> str:
        if col.is_primary_key:
            return f"{col.name} {self._dialect.primary_key_definition(col)}"

        parts = [col.name, self._dialect.column_type(col)]
        if not col.nullable:
            parts.append("NOT NULL")
        if col.unique:
            parts.append("UNIQUE")
        if col.default_value is not None:
            if not _DEFAULT_LITERAL.fullmatch(col.default_value.strip()):
                raise ConfigurationError(
                    f"Unsafe default value {col.default_value!r} for {d.table_name}.{col.name}"
                ).with_context(entity=d.entity_name, table=d.table_name, column=col.name)
            parts.append(f"DEFAULT {col.default_value.strip()}")
        return " ".join(parts)

    def create_table(self, entity_type: type) -> None:
        d = self.describe(entity_type)
        sql = self.create_table_sql(entity_type)
        with self._annotate(d, "create_table"):
            self._executor.execute(sql)
        logger.info("crud.table_created", table=d.table_name)

    def drop_table(self, entity_type: type) -> None:
        d = self.describe(entity_type)
        with self._annotate(d, "drop_table"):
            self._executor.execute(f"DROP TABLE IF EXISTS {d.table_name}")
        logger.info("crud.table_dropped", table=d.table_name)

    def table_exists(self, entity_type_or_name: type | str) -> bool:
        if isinstance(entity_type_or_name, str):
            name = require_identifier(entity_type_or_name)
        else:
            name = self.describe(entity_type_or_name).table_name
        return self._executor.query_one(self._dialect.table_exists_query(), [name]) is not None

    # -- Async twins -------------------------------------------------------

    async def find_async(self, entity_type: type[T], key: Any) -> T | None:
        return await self._executor.run_async(self.find, entity_type, key)

    async def find_all_async(self, entity_type: type[T]) -> list[T]:
        return await self._executor.run_async(self.find_all, entity_type)

    async def insert_async(self, entity: Any) -> Any:
        return await self._executor.run_async(self.insert, entity)

    async def update_async(self, entity: Any) -> bool:
        return await self._executor.run_async(self.update, entity)

    async def save_async(self, entity: T) -> T:
        return await self._executor.run_async(self.save, entity)

    async def upsert_async(self, entity: T) -> T:
        return await self._executor.run_async(self.upsert, entity)

    async def delete_async(self, entity: Any) -> bool:
        return await self._executor.run_async(self.delete, entity)

    async def delete_by_id_async(self, entity_type: type, key: Any) -> bool:
        return await self._executor.run_async(self.delete_by_id, entity_type, key)

    async def create_table_async(self, entity_type: type) -> None:
        await self._executor.run_async(self.create_table, entity_type)

    async def drop_table_async(self, entity_type: type) -> None:
        await self._executor.run_async(self.drop_table, entity_type)

    async def count_async(self, entity_type: type) -> int:
        return await self._executor.run_async(self.count, entity_type)


__all__ = ["CrudEngine"]
