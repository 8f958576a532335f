"""
Fluent, injection-safe SELECT/DELETE builder.

Column names, operators and sort directions go through
:mod:`rowkeep.sanitizer` the moment they are passed in, so an unsafe call
raises before any SQL text exists. Values are always bound parameters.

Examples:
    >>> q = (db.select(Player)
    ...        .where("level", ">=", 10)
    ...        .and_("name", "LIKE", "A%")
    ...        .order_by("level", "DESC")
    ...        .limit(5))
    >>> q.build()
    ('SELECT id, name, level FROM players WHERE level >= ? AND name LIKE ? ORDER BY level DESC LIMIT 5', [10, 'A%'])

Conditions combine strictly left to right with the connector given by the
caller (``where``/``and_`` give AND, ``or_`` gives OR). The usual SQL
precedence of AND over OR then applies to the emitted text; there is no
grouping.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from rowkeep.errors import InvalidIdentifierError, UnsupportedOperatorError, ValidationError
from rowkeep.mapper import EntityMapper
from rowkeep.metadata import ColumnDescriptor, EntityDescriptor
from rowkeep.sanitizer import require_direction, require_identifier, require_operator

T = TypeVar("T")

_MISSING: Any = object()

_NULL_OPERATORS = frozenset({"IS", "IS NOT"})
_LIST_OPERATORS = frozenset({"IN", "NOT IN"})


@dataclass(frozen=True)
class _Condition:
    connector: str
    column: ColumnDescriptor
    operator: str
    value: Any


class QueryBuilder(Generic[T]):
    """Builds and runs queries against one entity table.

    ``executor`` is a :class:`~rowkeep.connection.ConnectionManager` or a
    :class:`~rowkeep.transaction.Transaction`.
    """

    def __init__(self, descriptor: EntityDescriptor[T], executor: Any, mapper: EntityMapper):
        self._descriptor = descriptor
        self._executor = executor
        self._mapper = mapper
        self._dialect = mapper.dialect
        self._conditions: list[_Condition] = []
        self._order: list[tuple[str, str]] = []
        self._limit: int | None = None
        self._offset: int | None = None

    # -- Conditions --------------------------------------------------------

    def where(self, column: str, operator: Any, value: Any = _MISSING) -> QueryBuilder[T]:
        """Add an AND-joined condition.

        ``where(column, value)`` is shorthand for ``where(column, "=", value)``.
        """
        return self._add("AND", column, operator, value)

    def and_(self, column: str, operator: Any, value: Any = _MISSING) -> QueryBuilder[T]:
        return self._add("AND", column, operator, value)

    def or_(self, column: str, operator: Any, value: Any = _MISSING) -> QueryBuilder[T]:
        return self._add("OR", column, operator, value)

    def _add(self, connector: str, column: str, operator: Any, value: Any) -> QueryBuilder[T]:
        if value is _MISSING:
            operator, value = "=", operator

        require_identifier(column)
        descriptor_column = self._descriptor.column(column)
        if descriptor_column is None:
            raise InvalidIdentifierError(
                f"Unknown column {column!r} for {self._descriptor.entity_name}", value=column
            ).with_context(table=self._descriptor.table_name, column=column)
        op = require_operator(operator)

        if op in _NULL_OPERATORS and value is not None:
            raise UnsupportedOperatorError(
                f"{op} only accepts None, got {type(value).__name__}", value=op
            ).with_context(column=column)
        if op in _LIST_OPERATORS and (
            isinstance(value, (str, bytes)) or not isinstance(value, (Sequence, set, frozenset)) or not value
        ):
            raise UnsupportedOperatorError(
                f"{op} requires a non-empty sequence of values", value=op
            ).with_context(column=column)

        self._conditions.append(_Condition(connector, descriptor_column, op, value))
        return self

    # -- Ordering and paging -----------------------------------------------

    def order_by(self, column: str, direction: str = "ASC") -> QueryBuilder[T]:
        require_identifier(column)
        if not self._descriptor.has_column(column):
            raise InvalidIdentifierError(
                f"Unknown column {column!r} for {self._descriptor.entity_name}", value=column
            ).with_context(table=self._descriptor.table_name, column=column)
        self._order.append((column, require_direction(direction)))
        return self

    def limit(self, n: int) -> QueryBuilder[T]:
        self._limit = _non_negative("limit", n)
        return self

    def offset(self, n: int) -> QueryBuilder[T]:
        self._offset = _non_negative("offset", n)
        return self

    # -- SQL ---------------------------------------------------------------

    def _where_clause(self) -> tuple[str, list[Any]]:
        if not self._conditions:
            return "", []

        parts: list[str] = []
        params: list[Any] = []
        for i, cond in enumerate(self._conditions):
            if i:
                parts.append(cond.connector)
            if cond.operator in _NULL_OPERATORS:
                parts.append(f"{cond.column.name} {cond.operator} NULL")
            elif cond.operator in _LIST_OPERATORS:
                values = list(cond.value)
                placeholders = ", ".join(
                    self._dialect.placeholder(len(params) + j) for j in range(len(values))
                )
                parts.append(f"{cond.column.name} {cond.operator} ({placeholders})")
                params.extend(self._mapper.to_db_value(cond.column, v) for v in values)
            else:
                parts.append(
                    f"{cond.column.name} {cond.operator} {self._dialect.placeholder(len(params))}"
                )
                params.append(self._mapper.to_db_value(cond.column, cond.value))
        return " WHERE " + " ".join(parts), params

    def _select(self, columns: str, *, limit: int | None, offset: int | None, ordered: bool) -> tuple[str, list[Any]]:
        where, params = self._where_clause()
        sql = f"SELECT {columns} FROM {self._descriptor.table_name}{where}"
        if ordered and self._order:
            sql += " ORDER BY " + ", ".join(f"{col} {direction}" for col, direction in self._order)
        paging = self._dialect.limit_offset(limit, offset)
        if paging:
            sql += " " + paging
        return sql, params

    def build(self) -> tuple[str, list[Any]]:
        """Return ``(sql, params)`` for the SELECT."""
        return self._select(
            ", ".join(self._descriptor.column_names),
            limit=self._limit,
            offset=self._offset,
            ordered=True,
        )

    def to_sql(self) -> str:
        return self.build()[0]

    # -- Terminals ---------------------------------------------------------

    def execute(self) -> list[T]:
        sql, params = self.build()
        rows = self._executor.query(sql, params)
        return [self._mapper.to_entity(self._descriptor, row) for row in rows]

    def first(self) -> T | None:
        sql, params = self._select(
            ", ".join(self._descriptor.column_names),
            limit=1,
            offset=self._offset,
            ordered=True,
        )
        row = self._executor.query_one(sql, params)
        return self._mapper.to_entity(self._descriptor, row) if row else None

    def count(self) -> int:
        """Number of matching rows (ordering and paging ignored)."""
        sql, params = self._select("COUNT(*)", limit=None, offset=None, ordered=False)
        return int(self._executor.scalar(sql, params) or 0)

    def exists(self) -> bool:
        sql, params = self._select("1", limit=1, offset=None, ordered=False)
        return self._executor.query_one(sql, params) is not None

    def delete(self) -> int:
        """Delete matching rows; returns the number removed.

        Without conditions every row of the table is deleted. The entity
        cache is not consulted or updated.
        """
        where, params = self._where_clause()
        return self._executor.execute(f"DELETE FROM {self._descriptor.table_name}{where}", params)

    async def execute_async(self) -> list[T]:
        return await self._executor.run_async(self.execute)

    async def first_async(self) -> T | None:
        return await self._executor.run_async(self.first)

    async def count_async(self) -> int:
        return await self._executor.run_async(self.count)

    async def exists_async(self) -> bool:
        return await self._executor.run_async(self.exists)

    async def delete_async(self) -> int:
        return await self._executor.run_async(self.delete)

    def __repr__(self) -> str:
        return f"QueryBuilder({self._descriptor.entity_name}, conditions={len(self._conditions)})"


def _non_negative(name: str, n: Any) -> int:
    if isinstance(n, bool) or not isinstance(n, int) or n < 0:
        raise ValidationError(f"{name} must be a non-negative integer, got {n!r}", value=n).with_context(
            operation=name
        )
    return n


__all__ = ["QueryBuilder"]
