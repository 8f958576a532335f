"""
Batched inserts, updates and deletes for one entity type.

Staged operations run in a single transaction, inserts first, then
updates, then deletes. Each list is cut into chunks of at most
``batch_size`` entities and every chunk is one ``executemany`` call.

Manifesto:
    Bulk writes are all-or-nothing. If any chunk fails the transaction is
    rolled back and :class:`~rowkeep.errors.BatchError` reports how far the
    batch got (per-kind counts, failing kind, chunk index) so the caller
    can log or retry it.

    The batch engine writes straight to the table and never touches the
    entity cache; cached copies of affected entities may be stale until
    they expire or are invalidated.

Examples:
    >>> result = (db.batch(Player, batch_size=500)
    ...             .insert_all(new_players)
    ...             .update(renamed)
    ...             .delete_all(banned)
    ...             .execute())
    >>> result.total_affected
    2503

Tags:
    batch, bulk-write, executemany, transactions, rowkeep
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from rowkeep.connection import ConnectionManager
from rowkeep.crud import CrudEngine
from rowkeep.errors import BatchError, RowkeepError, ValidationError
from rowkeep.logging import get_logger
from rowkeep.metadata import EntityDescriptor

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 1000


@dataclass(frozen=True)
class BatchResult:
    """Rows affected per operation kind and how long the batch took."""

    inserted_count: int = 0
    updated_count: int = 0
    deleted_count: int = 0
    execution_time_ms: float = 0.0
    chunks_executed: int = 0

    @property
    def total_affected(self) -> int:
        return self.inserted_count + self.updated_count + self.deleted_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted_count": self.inserted_count,
            "updated_count": self.updated_count,
            "deleted_count": self.deleted_count,
            "total_affected": self.total_affected,
            "chunks_executed": self.chunks_executed,
            "execution_time_ms": round(self.execution_time_ms, 3),
        }


def _chunks(items: list[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class BatchOperation(Generic[T]):
    """Staging area for bulk writes of one entity type.

    Staging methods return ``self`` for chaining. Generated keys are not
    read back for batched inserts.
    """

    def __init__(
        self,
        entity_type: type[T],
        manager: ConnectionManager,
        crud: CrudEngine,
        *,
        batch_size: int | None = None,
    ):
        self._entity_type = entity_type
        self._descriptor: EntityDescriptor[T] = crud.describe(entity_type)
        self._manager = manager
        self._crud = crud
        self._batch_size = DEFAULT_BATCH_SIZE
        self.batch_size(batch_size if batch_size is not None else manager.config.batch_size)
        self._inserts: list[T] = []
        self._updates: list[T] = []
        self._deletes: list[T] = []

    # -- Staging -----------------------------------------------------------

    def _check(self, entity: Any) -> T:
        if type(entity) is not self._entity_type:
            raise TypeError(
                f"Batch for {self._entity_type.__name__} cannot stage {type(entity).__name__}"
            )
        return entity

    def insert(self, entity: T) -> BatchOperation[T]:
        self._inserts.append(self._check(entity))
        return self

    def insert_all(self, entities: Iterable[T]) -> BatchOperation[T]:
        self._inserts.extend(self._check(e) for e in entities)
        return self

    def update(self, entity: T) -> BatchOperation[T]:
        self._updates.append(self._check(entity))
        return self

    def update_all(self, entities: Iterable[T]) -> BatchOperation[T]:
        self._updates.extend(self._check(e) for e in entities)
        return self

    def delete(self, entity: T) -> BatchOperation[T]:
        self._deletes.append(self._check(entity))
        return self

    def delete_all(self, entities: Iterable[T]) -> BatchOperation[T]:
        self._deletes.extend(self._check(e) for e in entities)
        return self

    def batch_size(self, n: int) -> BatchOperation[T]:
        """Set the maximum number of entities per ``executemany`` chunk."""
        if isinstance(n, bool) or not isinstance(n, int) or n < 1:
            raise ValidationError(
                f"batch_size must be a positive integer, got {n!r}", value=n
            ).with_context(table=self._descriptor.table_name, operation="batch_size")
        self._batch_size = n
        return self

    @property
    def pending(self) -> int:
        return len(self._inserts) + len(self._updates) + len(self._deletes)

    def clear(self) -> None:
        self._inserts.clear()
        self._updates.clear()
        self._deletes.clear()

    # -- Execution ---------------------------------------------------------

    def _plan(self) -> list[tuple[str, list[T], str | None, Callable[[T], list[Any]]]]:
        """``(operation, entities, sql, to_params)`` steps in execution order.

        A key-only entity has nothing to write on update; its step carries no
        SQL and counts the stored rows matching the chunk's keys instead.
        """
        d = self._descriptor
        mapper = self._crud.mapper

        def insert_params(e: T) -> list[Any]:
            return mapper.to_parameters(d, e, d.insert_columns)

        def update_params(e: T) -> list[Any]:
            return mapper.to_parameters(d, e, d.update_columns) + [
                mapper.to_db_value(d.primary_key, d.key_of(e))
            ]

        def delete_params(e: T) -> list[Any]:
            return [mapper.to_db_value(d.primary_key, d.key_of(e))]

        if d.update_columns:
            update_step = ("update", self._updates, self._crud.update_sql(d), update_params)
        else:
            update_step = ("update", self._updates, None, delete_params)
        return [
            ("insert", self._inserts, self._crud.insert_sql(d), insert_params),
            update_step,
            ("delete", self._deletes, self._crud.delete_sql(d), delete_params),
        ]

    def _count_matches(self, tx: Any, params: list[list[Any]]) -> int:
        d = self._descriptor
        sql = (
            f"SELECT COUNT(*) FROM {d.table_name} WHERE {d.primary_key.name} "
            f"IN ({self._crud.mapper.dialect.placeholders(len(params))})"
        )
        return int(tx.scalar(sql, [p[0] for p in params]) or 0)

    def execute(self) -> BatchResult:
        """Run all staged operations in one transaction.

        Staged operations are cleared on success and kept on failure.

        Raises:
            BatchError: A chunk (or the commit) failed; nothing was persisted.
        """
        if not self.pending:
            return BatchResult()

        start = time.perf_counter()
        counts = {"insert": 0, "update": 0, "delete": 0}
        chunks = 0

        def partial() -> BatchResult:
            return BatchResult(
                inserted_count=counts["insert"],
                updated_count=counts["update"],
                deleted_count=counts["delete"],
                execution_time_ms=(time.perf_counter() - start) * 1000,
                chunks_executed=chunks,
            )

        operation, chunk_index = "begin", -1
        try:
            with self._manager.begin_transaction() as tx:
                for operation, entities, sql, to_params in self._plan():
                    for chunk_index, chunk in enumerate(_chunks(entities, self._batch_size)):
                        params = [to_params(e) for e in chunk]
                        if sql is None:
                            affected = self._count_matches(tx, params)
                        else:
                            affected = tx.execute_many(sql, params)
                        counts[operation] += affected if affected >= 0 else len(chunk)
                        chunks += 1
                operation, chunk_index = "commit", -1
        except RowkeepError as e:
            result = partial()
            logger.error(
                "batch.chunk_failed",
                table=self._descriptor.table_name,
                operation=operation,
                chunk_index=chunk_index,
                error=str(e),
            )
            raise BatchError(
                f"Batch {operation} failed on {self._descriptor.table_name}: {e.message}",
                partial_result=result,
                operation=operation,
                chunk_index=chunk_index,
                cause=e,
            ).with_context(entity=self._descriptor.entity_name, table=self._descriptor.table_name) from e

        result = partial()
        self.clear()
        logger.info(
            "batch.completed",
            table=self._descriptor.table_name,
            chunks=result.chunks_executed,
            affected=result.total_affected,
            ms=round(result.execution_time_ms, 2),
        )
        return result

    async def execute_async(self) -> BatchResult:
        return await self._manager.run_async(self.execute)

    def __repr__(self) -> str:
        return (
            f"BatchOperation({self._entity_type.__name__}, inserts={len(self._inserts)}, "
            f"updates={len(self._updates)}, deletes={len(self._deletes)}, "
            f"batch_size={self._batch_size})"
        )


__all__ = ["BatchOperation", "BatchResult", "DEFAULT_BATCH_SIZE"]
