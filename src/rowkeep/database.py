"""
The ``Database`` facade.

One ``Database`` owns everything for one backend: the connection manager
(pool + worker executor + statistics), the metadata cache, the entity
mapper, the CRUD engine and the entity cache manager. Nothing is global,
so two ``Database`` instances in one process never share state.

Examples:
    >>> from rowkeep import Database, entity, primary_key, column
    >>> @entity(table="players", cache_ttl=60)
    ... class Player:
    ...     id: int | None = primary_key(generated=True)
    ...     name: str = column(length=32, nullable=False, default="")
    >>> db = Database("sqlite:///game.db")
    >>> db.create_table(Player)
    >>> key = db.insert(Player(name="Alex"))
    >>> db.find(Player, key).name
    'Alex'
    >>> db.close()

Cache consistency:
    ``find`` reads through the entity cache of cacheable types. ``insert``,
    ``update``, ``save`` and ``upsert`` refresh the cached copy (or
    invalidate it when the type sets ``refresh_on_write=False``);
    ``delete`` and ``delete_by_id`` invalidate. Raw SQL, query-builder
    deletes, transactional writes through :meth:`Database.using` and
    batches bypass the cache.

Tags:
    facade, orm, database, rowkeep
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from rowkeep.batch import BatchOperation
from rowkeep.cache import CacheManager, CacheStats, Clock
from rowkeep.connection import ConnectionManager
from rowkeep.crud import CrudEngine
from rowkeep.dialect import Dialect
from rowkeep.logging import get_logger
from rowkeep.mapper import EntityMapper
from rowkeep.metadata import EntityDescriptor, MetadataCache
from rowkeep.query import QueryBuilder
from rowkeep.settings import DatabaseSettings
from rowkeep.stats import DatabaseStats
from rowkeep.transaction import Transaction
from rowkeep.types import DatabaseConfig

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class Database:
    """Entry point: CRUD, queries, batches, transactions and raw SQL.

    Args:
        config: A :class:`DatabaseConfig` or a database URL / SQLite path.
        metadata: Metadata cache to use (a fresh one by default).
        clock: Time source for the entity cache.
        creator: Custom DB-API connection factory for the pool.
    """

    def __init__(
        self,
        config: DatabaseConfig | str,
        *,
        metadata: MetadataCache | None = None,
        clock: Clock = time.monotonic,
        creator: Callable[[], Any] | None = None,
    ):
        if isinstance(config, str):
            config = DatabaseConfig.from_url(config)
        self._manager = ConnectionManager(config, creator=creator)
        self._metadata = metadata if metadata is not None else MetadataCache()
        self._mapper = EntityMapper(self._manager.dialect)
        self._crud = CrudEngine(self._manager, self._metadata, self._mapper)
        self._cache = CacheManager(self._metadata, clock=clock)

    @classmethod
    def from_settings(cls, settings: DatabaseSettings | None = None, **kwargs: Any) -> Database:
        """Build from ``ROWKEEP_DB_*`` environment settings."""
        settings = settings or DatabaseSettings()
        return cls(settings.to_config(), **kwargs)

    # -- Components --------------------------------------------------------

    @property
    def config(self) -> DatabaseConfig:
        return self._manager.config

    @property
    def dialect(self) -> Dialect:
        return self._manager.dialect

    @property
    def connection_manager(self) -> ConnectionManager:
        return self._manager

    @property
    def metadata(self) -> MetadataCache:
        return self._metadata

    @property
    def mapper(self) -> EntityMapper:
        return self._mapper

    @property
    def crud(self) -> CrudEngine:
        return self._crud

    @property
    def cache(self) -> CacheManager:
        return self._cache

    # -- Lifecycle ---------------------------------------------------------

    def connect(self) -> Database:
        """Validate connectivity; returns ``self`` for chaining."""
        self._manager.connect()
        return self

    def close(self) -> None:
        """Stop the cache sweeper, then dispose the pool and worker executor."""
        self._cache.stop()
        self._manager.close()

    @property
    def is_connected(self) -> bool:
        return self._manager.is_connected

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def describe(self, entity_type: type[T]) -> EntityDescriptor[T]:
        return self._metadata.describe(entity_type)

    # -- Entity cache bookkeeping -------------------------------------------

    def _cache_key(self, entity_type: type, key: Any) -> Any:
        # Cache entries are keyed by the normalized key so text and typed
        # keys for the same row share one entry.
        return self._mapper.normalize_key(self.describe(entity_type), key)

    def _entity_key(self, entity: Any) -> Any:
        return self._cache_key(type(entity), self.describe(type(entity)).key_of(entity))

    def _after_write(self, entity: Any) -> None:
        entity_type = type(entity)
        if not self._cache.is_cached(entity_type):
            return
        key = self._entity_key(entity)
        if self._cache.refresh_on_write(entity_type):
            self._cache.put(entity_type, key, entity)
        else:
            self._cache.invalidate(entity_type, key)

    # -- CRUD --------------------------------------------------------------

    def find(self, entity_type: type[T], key: Any) -> T | None:
        """Load by primary key, reading through the entity cache."""
        cache_key = self._cache_key(entity_type, key) if self._cache.is_cached(entity_type) else None
        if cache_key is not None:
            cached = self._cache.get(entity_type, cache_key)
            if cached is not None:
                return cached
        found = self._crud.find(entity_type, key)
        if found is not None and cache_key is not None:
            self._cache.put(entity_type, cache_key, found)
        return found

    def find_all(self, entity_type: type[T]) -> list[T]:
        return self._crud.find_all(entity_type)

    def exists(self, entity_type: type, key: Any) -> bool:
        return self._crud.exists(entity_type, key)

    def count(self, entity_type: type) -> int:
        return self._crud.count(entity_type)

    def select(self, entity_type: type[T]) -> QueryBuilder[T]:
        return self._crud.select(entity_type)

    def insert(self, entity: Any) -> Any:
        key = self._crud.insert(entity)
        self._after_write(entity)
        return key

    def update(self, entity: Any) -> bool:
        changed = self._crud.update(entity)
        if changed:
            self._after_write(entity)
        else:
            self._cache.invalidate(type(entity), self._entity_key(entity))
        return changed

    def save(self, entity: T) -> T:
        self._crud.save(entity)
        self._after_write(entity)
        return entity

    def upsert(self, entity: T) -> T:
        self._crud.upsert(entity)
        self._after_write(entity)
        return entity

    def delete(self, entity: Any) -> bool:
        key = self._entity_key(entity)
        removed = self._crud.delete(entity)
        self._cache.invalidate(type(entity), key)
        return removed

    def delete_by_id(self, entity_type: type, key: Any) -> bool:
        removed = self._crud.delete_by_id(entity_type, key)
        self._cache.invalidate(entity_type, self._cache_key(entity_type, key))
        return removed

    # -- Schema ------------------------------------------------------------

    def create_table(self, entity_type: type) -> None:
        self._crud.create_table(entity_type)

    def drop_table(self, entity_type: type) -> None:
        self._crud.drop_table(entity_type)
        self._cache.clear(entity_type)

    def table_exists(self, entity_type_or_name: type | str) -> bool:
        return self._crud.table_exists(entity_type_or_name)

    # -- Batches -----------------------------------------------------------

    def batch(self, entity_type: type[T], batch_size: int | None = None) -> BatchOperation[T]:
        return BatchOperation(entity_type, self._manager, self._crud, batch_size=batch_size)

    # -- Transactions ------------------------------------------------------

    def begin_transaction(self) -> Transaction:
        return self._manager.begin_transaction()

    def transaction(self) -> Transaction:
        """``with db.transaction() as tx:``; commit on success, rollback on error."""
        return self._manager.transaction()

    def run_in_transaction(self, fn: Callable[[Transaction], R]) -> R:
        return self._manager.run_in_transaction(fn)

    async def run_in_transaction_async(self, fn: Callable[[Transaction], R]) -> R:
        return await self._manager.run_in_transaction_async(fn)

    def using(self, tx: Transaction) -> CrudEngine:
        """CRUD engine bound to ``tx``; its writes bypass the entity cache."""
        return self._crud.bind(tx)

    # -- Raw SQL (not sanitized; caller's responsibility) ------------------

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        return self._manager.execute(sql, params)

    def execute_many(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> int:
        return self._manager.execute_many(sql, seq_of_params)

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return self._manager.query(sql, params)

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        return self._manager.query_one(sql, params)

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        return self._manager.scalar(sql, params)

    # -- Monitoring --------------------------------------------------------

    def stats(self) -> DatabaseStats:
        return self._manager.stats()

    def cache_stats(self, entity_type: type) -> CacheStats | None:
        return self._cache.stats(entity_type)

    def set_query_logging(self, enabled: bool) -> None:
        self._manager.set_query_logging(enabled)

    # -- Async twins -------------------------------------------------------

    async def find_async(self, entity_type: type[T], key: Any) -> T | None:
        return await self._manager.run_async(self.find, entity_type, key)

    async def find_all_async(self, entity_type: type[T]) -> list[T]:
        return await self._manager.run_async(self.find_all, entity_type)

    async def count_async(self, entity_type: type) -> int:
        return await self._manager.run_async(self.count, entity_type)

    async def insert_async(self, entity: Any) -> Any:
        return await self._manager.run_async(self.insert, entity)

    async def update_async(self, entity: Any) -> bool:
        return await self._manager.run_async(self.update, entity)

    async def save_async(self, entity: T) -> T:
        return await self._manager.run_async(self.save, entity)

    async def upsert_async(self, entity: T) -> T:
        return await self._manager.run_async(self.upsert, entity)

    async def delete_async(self, entity: Any) -> bool:
        return await self._manager.run_async(self.delete, entity)

    async def delete_by_id_async(self, entity_type: type, key: Any) -> bool:
        return await self._manager.run_async(self.delete_by_id, entity_type, key)

    async def create_table_async(self, entity_type: type) -> None:
        await self._manager.run_async(self.create_table, entity_type)

    async def drop_table_async(self, entity_type: type) -> None:
        await self._manager.run_async(self.drop_table, entity_type)

    async def execute_async(self, sql: str, params: Sequence[Any] = ()) -> int:
        return await self._manager.execute_async(sql, params)

    async def execute_many_async(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> int:
        return await self._manager.execute_many_async(sql, seq_of_params)

    async def query_async(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return await self._manager.query_async(sql, params)

    def __repr__(self) -> str:
        return f"Database({self._manager.config.describe()})"


__all__ = ["Database"]
