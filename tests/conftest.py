"""
Shared pytest fixtures and configuration for rowkeep tests.

This module provides:
- Location-based auto-marking (unit / integration)
- File-backed SQLite configurations under ``tmp_path``
- A ``Database`` with the sample entity tables created
- A manual clock for deterministic cache expiry

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments:

    def test_find(db):
        db.insert(make_player("Alex"))
"""

from collections.abc import Generator
from pathlib import Path

import pytest

from rowkeep import ConnectionManager, Database, DatabaseConfig, DatabaseType
from tests._support.clock import ManualClock
from tests._support.entities import AuditEntry, Player, Setting


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Path of a fresh SQLite database file."""
    return tmp_path / "rowkeep.db"


@pytest.fixture
def sqlite_config(db_path: Path) -> DatabaseConfig:
    """Small-pool SQLite configuration with a short lease timeout."""
    return DatabaseConfig(
        db_type=DatabaseType.SQLITE,
        database=str(db_path),
        pool_size=4,
        connection_timeout=5.0,
    )


@pytest.fixture
def manager(sqlite_config: DatabaseConfig) -> Generator[ConnectionManager, None, None]:
    """Connection manager over an empty database with a ``counters`` table."""
    mgr = ConnectionManager(sqlite_config)
    mgr.execute("CREATE TABLE counters (name VARCHAR(32) PRIMARY KEY, value INTEGER NOT NULL)")
    yield mgr
    mgr.close()


@pytest.fixture
def clock() -> ManualClock:
    """Manually advanced time source."""
    return ManualClock()


@pytest.fixture
def db(sqlite_config: DatabaseConfig, clock: ManualClock) -> Generator[Database, None, None]:
    """Database with the sample entity tables created and a manual cache clock."""
    database = Database(sqlite_config, clock=clock)
    for entity_type in (Player, AuditEntry, Setting):
        database.create_table(entity_type)
    yield database
    database.close()
