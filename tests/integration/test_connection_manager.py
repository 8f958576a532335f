"""Connection manager tests against a real SQLite file."""

from __future__ import annotations

import threading

import pytest

from rowkeep import (
    ConfigurationError,
    ConnectionManager,
    DatabaseConfig,
    DatabaseConnectionError,
    DatabaseType,
    IntegrityError,
    QueryError,
    TransactionError,
)
from tests._support import assert_pool_idle
from tests._support.fault_injection import FaultInjector


class TestStatements:
    def test_execute_and_query(self, manager: ConnectionManager):
        assert manager.execute("INSERT INTO counters (name, value) VALUES (?, ?)", ("hits", 1)) == 1
        assert manager.query("SELECT name, value FROM counters") == [{"name": "hits", "value": 1}]
        assert manager.query_one("SELECT value FROM counters WHERE name = ?", ("hits",)) == {"value": 1}
        assert manager.scalar("SELECT COUNT(*) FROM counters") == 1
        assert_pool_idle(manager)

    def test_query_one_and_scalar_empty(self, manager: ConnectionManager):
        assert manager.query_one("SELECT * FROM counters") is None
        assert manager.scalar("SELECT value FROM counters WHERE name = ?", ("none",)) is None

    def test_execute_many(self, manager: ConnectionManager):
        rows = [(f"c{i}", i) for i in range(10)]
        assert manager.execute_many("INSERT INTO counters (name, value) VALUES (?, ?)", rows) == 10
        assert manager.scalar("SELECT SUM(value) FROM counters") == 45

    def test_execute_many_empty(self, manager: ConnectionManager):
        assert manager.execute_many("INSERT INTO counters (name, value) VALUES (?, ?)", []) == 0
        assert manager.stats().total_queries == 1  # only the fixture's CREATE TABLE

    def test_execute_insert_returns_rowid(self, manager: ConnectionManager):
        manager.execute("CREATE TABLE events (id INTEGER PRIMARY KEY AUTOINCREMENT, note TEXT)")
        first = manager.execute_insert("INSERT INTO events (note) VALUES (?)", ("a",))
        second = manager.execute_insert("INSERT INTO events (note) VALUES (?)", ("b",))
        assert second == first + 1

    def test_writes_visible_across_connections(self, manager: ConnectionManager):
        manager.execute("INSERT INTO counters (name, value) VALUES (?, ?)", ("x", 5))

        seen = []
        thread = threading.Thread(target=lambda: seen.append(manager.scalar("SELECT value FROM counters")))
        thread.start()
        thread.join()
        assert seen == [5]


class TestErrorClassification:
    def test_unique_violation_is_integrity_error(self, manager: ConnectionManager):
        manager.execute("INSERT INTO counters (name, value) VALUES (?, ?)", ("dup", 1))
        with pytest.raises(IntegrityError) as exc_info:
            manager.execute("INSERT INTO counters (name, value) VALUES (?, ?)", ("dup", 2))

        err = exc_info.value
        assert err.context.sql.startswith("INSERT INTO counters")
        assert err.context.operation == "execute"
        assert "dup" not in str(err.context.to_dict())
        assert type(err.__cause__).__name__ == "IntegrityError"
        assert_pool_idle(manager)

    def test_syntax_error_is_query_error(self, manager: ConnectionManager):
        with pytest.raises(QueryError):
            manager.query("SELEC * FROM counters")
        stats = manager.stats()
        assert stats.failed_queries == 1
        assert_pool_idle(manager)

    def test_missing_table_is_query_error(self, manager: ConnectionManager):
        with pytest.raises(QueryError):
            manager.execute("DELETE FROM nowhere")


class TestLifecycle:
    def test_connect_pings(self, manager: ConnectionManager):
        manager.connect()
        assert manager.is_connected

    def test_close_is_idempotent(self, sqlite_config: DatabaseConfig):
        mgr = ConnectionManager(sqlite_config)
        mgr.close()
        mgr.close()
        assert not mgr.is_connected

    def test_use_after_close(self, sqlite_config: DatabaseConfig):
        with ConnectionManager(sqlite_config) as mgr:
            pass
        with pytest.raises(DatabaseConnectionError) as exc_info:
            mgr.query("SELECT 1")
        assert exc_info.value.retryable is False

    def test_invalid_config(self):
        with pytest.raises(ConfigurationError):
            ConnectionManager(DatabaseConfig(db_type=DatabaseType.SQLITE, database=""))

    def test_creates_parent_directory(self, tmp_path):
        nested = tmp_path / "a" / "b" / "game.db"
        with ConnectionManager(DatabaseConfig(database=str(nested))) as mgr:
            mgr.connect()
        assert nested.exists()

    def test_memory_database_shared_by_pool(self):
        config = DatabaseConfig(db_type=DatabaseType.SQLITE, database=":memory:", pool_size=2)
        with ConnectionManager(config) as mgr:
            mgr.execute("CREATE TABLE t (id INTEGER PRIMARY KEY)")
            mgr.execute("INSERT INTO t (id) VALUES (1)")
            with mgr.transaction() as tx:
                # Second pooled connection while the first is leased.
                assert mgr.scalar("SELECT COUNT(*) FROM t") == 1
                tx.execute("INSERT INTO t (id) VALUES (2)")
            assert mgr.scalar("SELECT COUNT(*) FROM t") == 2


class TestPool:
    def test_exhaustion_times_out(self, db_path):
        config = DatabaseConfig(database=str(db_path), pool_size=1, connection_timeout=0.2)
        with ConnectionManager(config) as mgr:
            tx = mgr.begin_transaction()
            try:
                with pytest.raises(DatabaseConnectionError) as exc_info:
                    mgr.query("SELECT 1")
                assert exc_info.value.retryable is True
            finally:
                tx.rollback()
            assert mgr.scalar("SELECT 1") == 1

    def test_stats_track_leases(self, manager: ConnectionManager):
        tx = manager.begin_transaction()
        stats = manager.stats()
        assert stats.active_connections == 1
        assert stats.idle_connections == 3
        assert stats.total_connections == 4
        assert stats.pool_utilization == 25.0
        tx.rollback()
        assert_pool_idle(manager)

    def test_concurrent_statements_stay_bounded(self, manager: ConnectionManager):
        errors = []

        def worker(n: int) -> None:
            try:
                for i in range(20):
                    manager.execute(
                        "INSERT INTO counters (name, value) VALUES (?, ?)", (f"w{n}-{i}", i)
                    )
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert manager.scalar("SELECT COUNT(*) FROM counters") == 160
        assert_pool_idle(manager)


class TestQueryLogging:
    def test_toggle(self, manager: ConnectionManager):
        assert manager.query_logging is False
        manager.set_query_logging(True)
        assert manager.query_logging is True
        manager.query("SELECT 1")


class TestFaultInjection:
    """Connections are returned even when the driver misbehaves."""

    @pytest.fixture
    def injector(self, db_path) -> FaultInjector:
        return FaultInjector(db_path)

    @pytest.fixture
    def flaky(self, sqlite_config: DatabaseConfig, injector: FaultInjector):
        mgr = ConnectionManager(sqlite_config, creator=injector)
        mgr.execute("CREATE TABLE counters (name VARCHAR(32) PRIMARY KEY, value INTEGER NOT NULL)")
        yield mgr
        injector.clear()
        mgr.close()

    def test_failed_begin_releases_connection(self, flaky: ConnectionManager, injector: FaultInjector):
        injector.install("autocommit")
        with pytest.raises(TransactionError, match="Could not begin"):
            flaky.begin_transaction()
        assert_pool_idle(flaky)

    def test_failed_commit_rolls_back_and_releases(self, flaky: ConnectionManager, injector: FaultInjector):
        def work(tx):
            tx.execute("INSERT INTO counters (name, value) VALUES (?, ?)", ("a", 1))
            injector.install("commit")

        with pytest.raises(TransactionError, match="Commit failed"):
            flaky.run_in_transaction(work)

        injector.clear()
        assert_pool_idle(flaky)
        assert flaky.scalar("SELECT COUNT(*) FROM counters") == 0
        assert flaky.stats().rolled_back_transactions == 1

    def test_failed_rollback_is_attached_to_original(self, flaky: ConnectionManager, injector: FaultInjector):
        def work(tx):
            tx.execute("INSERT INTO counters (name, value) VALUES (?, ?)", ("a", 1))
            injector.install("rollback")
            tx.execute("INSERT INTO counters (name, value) VALUES (?, ?)", ("a", 2))

        with pytest.raises(IntegrityError) as exc_info:
            flaky.run_in_transaction(work)

        injector.clear()
        err = exc_info.value
        assert "FAULT:rollback" in err.context.metadata["rollback_error"]
        assert any("rollback_error" in note for note in err.__notes__)
        assert_pool_idle(flaky)
        # The poisoned connection was discarded; the pool opens a fresh one.
        assert flaky.scalar("SELECT COUNT(*) FROM counters") == 0
