"""
Test support utilities for rowkeep tests.

Helpers that don't fit as pytest fixtures but are used across several
test files.
"""

from __future__ import annotations

from typing import Any

from rowkeep import ConnectionManager


def assert_pool_idle(manager: ConnectionManager) -> None:
    """Assert that every pooled connection has been returned."""
    stats = manager.stats()
    assert stats.active_connections == 0, (
        f"Expected no leased connections, found {stats.active_connections}: {stats.summary()}"
    )


def table_rows(manager: Any, table: str, order_by: str) -> list[dict[str, Any]]:
    """All rows of ``table`` ordered by ``order_by`` (trusted test identifiers only)."""
    return manager.query(f"SELECT * FROM {table} ORDER BY {order_by}")
