"""Explicit transactions on one leased connection.

A :class:`Transaction` is created by
:meth:`~rowkeep.connection.ConnectionManager.begin_transaction` and owns its
connection until it reaches a terminal state. Statements run strictly in
call order on that connection.

Each transaction holds a private lock while a statement (or the commit or
rollback) is on the wire. The lock belongs to the transaction alone and is
what keeps threads sharing one transaction from interleaving on its driver
connection; transactions never wait on each other through it.

Lifecycle::

    OPEN ──commit()──► COMMITTED
      │
      └──rollback() / close() / failed commit──► ROLLED_BACK

Both terminal states release the connection (autocommit restored) and are
final: any further call raises :class:`~rowkeep.errors.TransactionError`.

Example::

    with manager.transaction() as tx:
        tx.execute("UPDATE accounts SET balance = balance - ? WHERE id = ?", (10, 1))
        tx.savepoint("before_credit")
        tx.execute("UPDATE accounts SET balance = balance + ? WHERE id = ?", (10, 2))
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any

from rowkeep.errors import TransactionError
from rowkeep.logging import get_logger
from rowkeep.sanitizer import require_identifier

if TYPE_CHECKING:
    from rowkeep.connection import ConnectionManager
    from rowkeep.dialect import Dialect

logger = get_logger(__name__)


class TransactionState(str, Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction:
    """One unit of work on a dedicated pooled connection."""

    def __init__(self, manager: ConnectionManager, conn: Any):
        self._manager = manager
        self._conn: Any = conn
        self._state = TransactionState.OPEN
        self._savepoints: list[str] = []
        self._lock = threading.Lock()

    # -- State -------------------------------------------------------------

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is TransactionState.OPEN

    @property
    def is_committed(self) -> bool:
        return self._state is TransactionState.COMMITTED

    @property
    def is_rolled_back(self) -> bool:
        return self._state is TransactionState.ROLLED_BACK

    @property
    def dialect(self) -> Dialect:
        return self._manager.dialect

    @property
    def manager(self) -> ConnectionManager:
        return self._manager

    def _require_open(self, operation: str) -> Any:
        if self._state is not TransactionState.OPEN:
            raise TransactionError(
                f"Cannot {operation}: transaction already {self._state.value}"
            ).with_context(operation=operation)
        return self._conn

    # -- Statements --------------------------------------------------------

    def _run(self, sql: str, params: Any, mode: str) -> Any:
        with self._lock:
            conn = self._require_open(mode)
            return self._manager._run(conn, sql, params, mode)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        return self._run(sql, params, "execute")

    def execute_many(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> int:
        if not seq_of_params:
            return 0
        return self._run(sql, list(seq_of_params), "many")

    def execute_insert(self, sql: str, params: Sequence[Any] = (), *, returning: bool = False) -> Any:
        return self._run(sql, params, "returning" if returning else "insert")

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return self._run(sql, params, "query")

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.query_one(sql, params)
        return next(iter(row.values())) if row else None

    # -- Savepoints --------------------------------------------------------

    def savepoint(self, name: str) -> None:
        require_identifier(name)
        self.execute(f"SAVEPOINT {name}")
        self._savepoints.append(name)

    def rollback_to(self, name: str) -> None:
        """Undo work since ``name``; the savepoint itself stays usable."""
        index = self._savepoint_index(name, "rollback_to")
        self.execute(f"ROLLBACK TO SAVEPOINT {name}")
        del self._savepoints[index + 1 :]

    def release_savepoint(self, name: str) -> None:
        index = self._savepoint_index(name, "release_savepoint")
        self.execute(f"RELEASE SAVEPOINT {name}")
        del self._savepoints[index:]

    def _savepoint_index(self, name: str, operation: str) -> int:
        require_identifier(name)
        for index in range(len(self._savepoints) - 1, -1, -1):
            if self._savepoints[index] == name:
                return index
        raise TransactionError(f"Unknown savepoint {name!r}").with_context(
            operation=operation, savepoint=name
        )

    # -- Completion --------------------------------------------------------

    def commit(self) -> None:
        """Commit and release the connection.

        A failed commit rolls back, releases the connection and raises
        :class:`TransactionError`.
        """
        with self._lock:
            conn = self._require_open("commit")
            try:
                conn.commit()
            except Exception as e:
                error = TransactionError(f"Commit failed: {e}", cause=e).with_context(
                    operation="commit"
                )
                failure = self._rollback_quietly(conn, error)
                self._finish(TransactionState.ROLLED_BACK, invalidate=failure)
                raise error from e
            self._finish(TransactionState.COMMITTED)
            logger.debug("transaction.committed")

    def rollback(self) -> None:
        """Roll back and release the connection."""
        with self._lock:
            conn = self._require_open("rollback")
            try:
                conn.rollback()
            except Exception as e:
                self._finish(TransactionState.ROLLED_BACK, invalidate=e)
                raise TransactionError(f"Rollback failed: {e}", cause=e).with_context(
                    operation="rollback"
                ) from e
            self._finish(TransactionState.ROLLED_BACK)
            logger.debug("transaction.rolled_back")

    def abort(self, error: BaseException) -> None:
        """Roll back because ``error`` is propagating.

        A rollback failure is attached to ``error`` instead of replacing it.
        No-op when the transaction already finished.
        """
        with self._lock:
            if self._state is not TransactionState.OPEN:
                return
            failure = self._rollback_quietly(self._conn, error)
            self._finish(TransactionState.ROLLED_BACK, invalidate=failure)
            logger.debug("transaction.rolled_back", error=type(error).__name__)

    def close(self) -> None:
        """Roll back if still open and release the connection. Idempotent."""
        if self.is_active:
            self.rollback()

    def _rollback_quietly(self, conn: Any, primary: BaseException) -> BaseException | None:
        try:
            conn.rollback()
        except Exception as e:
            self._manager._log_rollback_failure(primary, e)
            return e
        return None

    def _finish(self, state: TransactionState, *, invalidate: BaseException | None = None) -> None:
        conn, self._conn = self._conn, None
        self._state = state
        self._savepoints.clear()
        self._manager._transaction_finished(committed=state is TransactionState.COMMITTED)
        if invalidate is not None:
            # State unknown after a failed rollback; the pool must not reuse it.
            conn.invalidate(invalidate)
            conn.close()
        else:
            self._manager._restore_and_release(conn)

    async def run_async(self, fn, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking callable on the owning manager's worker executor."""
        return await self._manager.run_async(fn, *args, **kwargs)

    # -- Context manager ---------------------------------------------------

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_val is not None:
            self.abort(exc_val)
        elif self.is_active:
            self.commit()

    def __repr__(self) -> str:
        return f"Transaction(state={self._state.value})"


__all__ = ["Transaction", "TransactionState"]
