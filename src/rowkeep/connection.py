"""
Pooled connection management.

``ConnectionManager`` owns one SQLAlchemy ``QueuePool`` of raw DB-API
connections, one worker executor for the async twins, and the statistics
collector. Every public call leases a connection, runs one statement and
returns the connection before it returns, on success and failure alike.

Manifesto:
    Connections are the scarcest resource in the process. Nothing outside
    this module and :mod:`rowkeep.transaction` ever holds one, and no
    result object outlives its lease: rows are materialized into dicts
    before the connection goes back to the pool.

    - **Bounded:** ``pool_size`` connections, no overflow
    - **Leased:** ``with manager.connection()`` always returns the lease
    - **Classified:** driver failures become typed ``DatabaseError`` subclasses
    - **Observable:** every statement feeds :class:`~rowkeep.stats.StatsCollector`

Architecture:
    ::

        execute / query / scalar ─┐
                                  ├─► _lease() ─► QueuePool ─► creator()
        begin_transaction ────────┘        │                     │
                                           ▼                     ▼
                                   _run(conn, sql)         sqlite3 / psycopg2 /
                                     │  stats + logging    mysql.connector
                                     ▼
                                 conn.close()  (returned to pool)

        *_async ─► loop.run_in_executor(manager.executor, sync twin)

Backends:
    ==============  =====================  ==========================
    Backend         Driver                 Install
    ==============  =====================  ==========================
    sqlite          ``sqlite3`` (stdlib)   built in
    postgresql      ``psycopg2``           ``pip install rowkeep[postgres]``
    mysql/mariadb   ``mysql.connector``    ``pip install rowkeep[mysql]``
    ==============  =====================  ==========================

Guardrails:
    ❌ DON'T: Keep a reference to a leased connection past its ``with`` block
    ✅ DO: Use ``query()``, which returns plain dicts

    ❌ DON'T: Use ``:memory:`` expecting one database per connection
    ✅ DO: Rely on the shared in-memory database the manager sets up for it

Tags:
    connection-pool, sqlalchemy, transactions, async, rowkeep
"""

from __future__ import annotations

import asyncio
import functools
import threading
import time
import uuid
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy.pool import QueuePool

from rowkeep.dialect import Dialect, get_dialect
from rowkeep.errors import (
    ConfigurationError,
    DatabaseConnectionError,
    DatabaseError,
    IntegrityError,
    QueryError,
    RowkeepError,
    TransactionError,
    attach_secondary_error,
)
from rowkeep.logging import get_logger
from rowkeep.stats import DatabaseStats, StatsCollector
from rowkeep.transaction import Transaction
from rowkeep.types import DatabaseConfig, DatabaseType

logger = get_logger(__name__)

R = TypeVar("R")

Params = Sequence[Any]


# ── Drivers ──────────────────────────────────────────────────────────────

# Each driver is imported lazily so only the backend in use needs to be
# installed.


def _sqlite_connect(config: DatabaseConfig) -> Any:
    import sqlite3

    path = config.database
    uri = path.startswith("file:")
    if not uri:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        path,
        timeout=config.connection_timeout,
        check_same_thread=False,
        uri=uri,
        isolation_level=None if config.auto_commit else "DEFERRED",
        **config.options,
    )
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _sqlite_set_autocommit(raw: Any, enabled: bool) -> None:
    raw.isolation_level = None if enabled else "DEFERRED"
    # sqlite3 only opens a transaction implicitly before DML. Without an
    # explicit BEGIN a leading SAVEPOINT would become the outermost
    # transaction and RELEASE would commit it.
    if not enabled and not raw.in_transaction:
        raw.execute("BEGIN")


def _sqlite_is_transient(exc: BaseException) -> bool:
    message = str(exc).lower()
    return type(exc).__name__ == "OperationalError" and (
        "locked" in message or "busy" in message or "unable to open" in message
    )


def _postgres_connect(config: DatabaseConfig) -> Any:
    try:
        import psycopg2
    except ImportError:
        raise ConfigurationError(
            "psycopg2 is required for PostgreSQL. Install with: pip install rowkeep[postgres]"
        ) from None

    conn = psycopg2.connect(
        host=config.host,
        port=config.effective_port,
        dbname=config.database,
        user=config.username,
        password=config.password,
        connect_timeout=max(int(config.connection_timeout), 1),
        **config.options,
    )
    conn.autocommit = config.auto_commit
    return conn


def _mysql_connect(config: DatabaseConfig) -> Any:
    try:
        import mysql.connector
        from mysql.connector.constants import ClientFlag
    except ImportError:
        raise ConfigurationError(
            "mysql-connector-python is required for MySQL/MariaDB. "
            "Install with: pip install rowkeep[mysql]"
        ) from None

    # FOUND_ROWS: UPDATE rowcount counts matched rows, not only changed ones.
    return mysql.connector.connect(
        client_flags=[ClientFlag.FOUND_ROWS],
        host=config.host,
        port=config.effective_port,
        database=config.database,
        user=config.username,
        password=config.password,
        connection_timeout=max(int(config.connection_timeout), 1),
        autocommit=config.auto_commit,
        **config.options,
    )


def _attribute_set_autocommit(raw: Any, enabled: bool) -> None:
    raw.autocommit = enabled


def _network_is_transient(exc: BaseException) -> bool:
    names = {cls.__name__ for cls in type(exc).__mro__}
    return bool(names & {"OperationalError", "InterfaceError"})


@dataclass(frozen=True)
class Driver:
    """How to open, configure and classify errors for one DB-API driver."""

    connect: Callable[[DatabaseConfig], Any]
    set_autocommit: Callable[[Any, bool], None]
    is_transient: Callable[[BaseException], bool]


_DRIVERS: dict[DatabaseType, Driver] = {
    DatabaseType.SQLITE: Driver(_sqlite_connect, _sqlite_set_autocommit, _sqlite_is_transient),
    DatabaseType.POSTGRESQL: Driver(
        _postgres_connect, _attribute_set_autocommit, _network_is_transient
    ),
    DatabaseType.MYSQL: Driver(_mysql_connect, _attribute_set_autocommit, _network_is_transient),
    DatabaseType.MARIADB: Driver(_mysql_connect, _attribute_set_autocommit, _network_is_transient),
}


# ── ConnectionManager ────────────────────────────────────────────────────


class ConnectionManager:
    """Pool, executor and statistics for one database.

    Args:
        config: Connection configuration (validated here).
        dialect: Override the dialect picked from ``config.db_type``.
        creator: Zero-argument callable returning a raw DB-API connection.
            Replaces the backend driver's ``connect``; autocommit toggling
            and error classification still follow ``config.db_type``.

    Example:
        >>> manager = ConnectionManager(DatabaseConfig.from_url("sqlite:///game.db"))
        >>> manager.execute("CREATE TABLE t (id INTEGER PRIMARY KEY)")
        -1
        >>> manager.query("SELECT COUNT(*) AS n FROM t")
        [{'n': 0}]
        >>> manager.close()
    """

    def __init__(
        self,
        config: DatabaseConfig,
        *,
        dialect: Dialect | None = None,
        creator: Callable[[], Any] | None = None,
    ):
        config.validate()
        if config.db_type is DatabaseType.SQLITE and config.database == ":memory:":
            # Plain :memory: would give every pooled connection its own database.
            config = config.with_overrides(
                database=f"file:rowkeep-{uuid.uuid4().hex}?mode=memory&cache=shared"
            )
        self._config = config
        self._dialect = dialect or get_dialect(config.db_type)
        self._driver = _DRIVERS[config.db_type]
        self._creator = creator or functools.partial(self._driver.connect, config)
        self._query_logging = config.query_logging
        self._stats = StatsCollector()
        self._closed = False
        self._close_lock = threading.Lock()

        self._pool = QueuePool(
            self._creator,
            pool_size=config.pool_size,
            max_overflow=0,
            timeout=config.connection_timeout,
            recycle=config.max_lifetime if config.max_lifetime > 0 else -1,
            pre_ping=False,
            reset_on_return="rollback",
        )
        self._executor = ThreadPoolExecutor(
            max_workers=config.pool_size, thread_name_prefix="rowkeep-db"
        )
        logger.info(
            "pool.created",
            database=config.describe(),
            pool_size=config.pool_size,
            timeout=config.connection_timeout,
        )

    # -- Properties --------------------------------------------------------

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    @property
    def executor(self) -> ThreadPoolExecutor:
        """Worker pool the async twins run on."""
        return self._executor

    @property
    def is_connected(self) -> bool:
        return not self._closed

    @property
    def query_logging(self) -> bool:
        return self._query_logging

    def set_query_logging(self, enabled: bool) -> None:
        self._query_logging = enabled

    # -- Lifecycle ---------------------------------------------------------

    def connect(self) -> None:
        """Validate connectivity by leasing a connection and pinging."""
        self.scalar(self._dialect.ping_query())
        logger.debug("pool.validated", database=self._config.describe())

    def close(self) -> None:
        """Dispose the pool and shut the worker executor down. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=True)
        self._pool.dispose()
        logger.info("pool.closed", database=self._config.describe())

    def __enter__(self) -> ConnectionManager:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # -- Leasing -----------------------------------------------------------

    def _lease(self) -> Any:
        if self._closed:
            raise DatabaseConnectionError(
                "Connection manager is closed", retryable=False
            ).with_context(operation="lease")
        try:
            return self._pool.connect()
        except RowkeepError:
            raise
        except Exception as e:
            raise DatabaseConnectionError(
                f"Could not obtain a connection: {e}", cause=e
            ).with_context(operation="lease", database=self._config.describe()) from e

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Lease a pooled connection for the duration of the block."""
        conn = self._lease()
        try:
            yield conn
        except DatabaseConnectionError:
            conn.invalidate()
            raise
        finally:
            conn.close()

    def _set_autocommit(self, conn: Any, enabled: bool) -> None:
        self._driver.set_autocommit(conn.dbapi_connection, enabled)

    # -- Statement execution ----------------------------------------------

    def _run(self, conn: Any, sql: str, params: Any, mode: str, *, commit: bool = False) -> Any:
        """Run one statement on ``conn``.

        ``mode`` is ``"execute"`` (rowcount), ``"many"`` (executemany
        rowcount), ``"query"`` (list of dicts), ``"insert"`` (lastrowid) or
        ``"returning"`` (first column of the first row). ``commit`` commits
        on ``conn`` after the statement, inside the same error handling.
        """
        if self._query_logging:
            logger.info("db.query", sql=sql, param_count=len(params), mode=mode)

        start = time.perf_counter()
        cursor = conn.cursor()
        try:
            if mode == "many":
                cursor.executemany(sql, [tuple(p) for p in params])
            else:
                cursor.execute(sql, tuple(params))

            if mode == "query":
                columns = [desc[0] for desc in cursor.description or ()]
                result: Any = [dict(zip(columns, row, strict=False)) for row in cursor.fetchall()]
            elif mode == "returning":
                row = cursor.fetchone()
                result = row[0] if row else None
            elif mode == "insert":
                result = cursor.lastrowid
            else:
                result = cursor.rowcount

            if commit:
                conn.commit()
        except Exception as e:
            self._stats.record_query(_elapsed_ms(start), success=False)
            raise self._classify(e, sql, mode) from e
        finally:
            cursor.close()

        self._stats.record_query(_elapsed_ms(start), success=True)
        return result

    def _classify(self, exc: Exception, sql: str, mode: str) -> DatabaseError:
        names = {cls.__name__ for cls in type(exc).__mro__}
        if "IntegrityError" in names:
            error_cls: type[DatabaseError] = IntegrityError
        elif self._driver.is_transient(exc):
            error_cls = DatabaseConnectionError
        else:
            error_cls = QueryError
        error = error_cls(f"Statement failed: {exc}", cause=exc)
        error.with_context(sql=sql, operation=mode)
        return error

    def _autocommit_run(self, sql: str, params: Any, mode: str) -> Any:
        with self.connection() as conn:
            return self._run(conn, sql, params, mode, commit=mode != "query")

    def execute(self, sql: str, params: Params = ()) -> int:
        """Run a statement and commit it; returns the driver's rowcount."""
        return self._autocommit_run(sql, params, "execute")

    def execute_many(self, sql: str, seq_of_params: Sequence[Params]) -> int:
        """Run a statement once per parameter set, committed together."""
        if not seq_of_params:
            return 0
        return self._autocommit_run(sql, list(seq_of_params), "many")

    def execute_insert(self, sql: str, params: Params = (), *, returning: bool = False) -> Any:
        """Run an ``INSERT`` and return the generated key.

        ``returning=True`` reads the key from the statement's result set
        (``INSERT ... RETURNING``); otherwise ``cursor.lastrowid`` is used.
        """
        return self._autocommit_run(sql, params, "returning" if returning else "insert")

    def query(self, sql: str, params: Params = ()) -> list[dict[str, Any]]:
        """Run a query; rows are fully materialized before the lease ends."""
        return self._autocommit_run(sql, params, "query")

    def query_one(self, sql: str, params: Params = ()) -> dict[str, Any] | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def scalar(self, sql: str, params: Params = ()) -> Any:
        row = self.query_one(sql, params)
        return next(iter(row.values())) if row else None

    # -- Transactions ------------------------------------------------------

    def begin_transaction(self) -> Transaction:
        """Lease a connection and switch it to manual commit.

        The returned :class:`Transaction` owns the connection until it is
        committed, rolled back or closed.
        """
        conn = self._lease()
        try:
            self._set_autocommit(conn, False)
        except Exception as e:
            conn.close()
            raise TransactionError(
                f"Could not begin transaction: {e}", cause=e
            ).with_context(operation="begin") from e
        self._stats.record_transaction_started()
        return Transaction(self, conn)

    def transaction(self) -> Transaction:
        """``with manager.transaction() as tx:`` form of :meth:`begin_transaction`.

        Commits on a clean exit and rolls back when the block raises.
        """
        return self.begin_transaction()

    def run_in_transaction(self, fn: Callable[[Transaction], R]) -> R:
        """Run ``fn(tx)`` in one transaction.

        Commits when ``fn`` returns and rolls back when it raises. The
        connection is released on every path. Errors from ``fn`` propagate:
        rowkeep errors unchanged, anything else wrapped in
        :class:`TransactionError`.
        """
        tx = self.begin_transaction()
        try:
            result = fn(tx)
        except Exception as e:
            tx.abort(e)
            if isinstance(e, RowkeepError):
                raise
            raise TransactionError(f"Transaction failed: {e}", cause=e).with_context(
                operation="run_in_transaction"
            ) from e
        except BaseException as e:
            tx.abort(e)
            raise
        else:
            if tx.is_active:
                tx.commit()
            return result
        finally:
            tx.close()

    # -- Bookkeeping hooks used by Transaction ------------------------------

    def _transaction_finished(self, *, committed: bool) -> None:
        if committed:
            self._stats.record_commit()
        else:
            self._stats.record_rollback()

    def _restore_and_release(self, conn: Any) -> None:
        """Restore the default autocommit mode and return ``conn`` to the pool.

        A connection whose mode cannot be restored is invalidated so the
        pool replaces it.
        """
        try:
            self._set_autocommit(conn, self._config.auto_commit)
        except Exception as e:
            logger.warning("transaction.restore_autocommit_failed", error=str(e))
            conn.invalidate(e)
        finally:
            conn.close()

    def _log_rollback_failure(self, primary: BaseException, secondary: BaseException) -> None:
        attach_secondary_error(primary, secondary, "rollback_error")
        logger.error("transaction.rollback_failed", error=str(secondary), original=str(primary))

    # -- Async -------------------------------------------------------------

    async def run_async(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Run a blocking callable on the manager's worker executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    async def execute_async(self, sql: str, params: Params = ()) -> int:
        return await self.run_async(self.execute, sql, params)

    async def execute_many_async(self, sql: str, seq_of_params: Sequence[Params]) -> int:
        return await self.run_async(self.execute_many, sql, seq_of_params)

    async def query_async(self, sql: str, params: Params = ()) -> list[dict[str, Any]]:
        return await self.run_async(self.query, sql, params)

    async def run_in_transaction_async(self, fn: Callable[[Transaction], R]) -> R:
        return await self.run_async(self.run_in_transaction, fn)

    # -- Statistics --------------------------------------------------------

    def stats(self) -> DatabaseStats:
        return self._stats.snapshot(
            total_connections=self._config.pool_size,
            active_connections=max(self._pool.checkedout(), 0),
        )

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"ConnectionManager({self._config.describe()}, {state})"


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


__all__ = [
    "ConnectionManager",
    "Driver",
]
