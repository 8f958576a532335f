"""Runtime statistics for a connection manager.

``StatsCollector`` is updated on every statement and transaction;
``DatabaseStats`` is the frozen snapshot handed to callers.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any

HIGH_LOAD_UTILIZATION = 80.0
HEALTHY_SUCCESS_RATE = 95.0
HEALTHY_MAX_UTILIZATION = 90.0
HEALTHY_MAX_AVG_MS = 1000.0


@dataclass(frozen=True)
class DatabaseStats:
    """Point-in-time view of pool and query activity.

    Latencies are in milliseconds, uptime in seconds. Percentages are
    0-100.
    """

    total_connections: int = 0
    active_connections: int = 0
    idle_connections: int = 0

    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    average_query_ms: float = 0.0
    slowest_query_ms: float = 0.0
    fastest_query_ms: float = 0.0

    total_transactions: int = 0
    committed_transactions: int = 0
    rolled_back_transactions: int = 0

    uptime_seconds: float = 0.0

    @property
    def pool_utilization(self) -> float:
        if self.total_connections == 0:
            return 0.0
        return self.active_connections / self.total_connections * 100.0

    @property
    def success_rate(self) -> float:
        if self.total_queries == 0:
            return 100.0
        return self.successful_queries / self.total_queries * 100.0

    @property
    def commit_rate(self) -> float:
        if self.total_transactions == 0:
            return 100.0
        return self.committed_transactions / self.total_transactions * 100.0

    @property
    def queries_per_second(self) -> float:
        if self.uptime_seconds < 1:
            return 0.0
        return self.total_queries / self.uptime_seconds

    @property
    def is_high_load(self) -> bool:
        return self.pool_utilization > HIGH_LOAD_UTILIZATION

    @property
    def is_healthy(self) -> bool:
        return (
            self.success_rate > HEALTHY_SUCCESS_RATE
            and self.pool_utilization < HEALTHY_MAX_UTILIZATION
            and self.average_query_ms < HEALTHY_MAX_AVG_MS
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.update(
            pool_utilization=round(self.pool_utilization, 2),
            success_rate=round(self.success_rate, 2),
            commit_rate=round(self.commit_rate, 2),
            queries_per_second=round(self.queries_per_second, 2),
            is_high_load=self.is_high_load,
            is_healthy=self.is_healthy,
        )
        return data

    def summary(self) -> str:
        return (
            f"connections={self.active_connections}/{self.total_connections} "
            f"({self.pool_utilization:.1f}% used), "
            f"queries={self.total_queries} ({self.success_rate:.1f}% success), "
            f"avg={self.average_query_ms:.1f}ms, "
            f"transactions={self.total_transactions} ({self.commit_rate:.1f}% committed), "
            f"uptime={int(self.uptime_seconds)}s, "
            f"qps={self.queries_per_second:.2f}, "
            f"healthy={self.is_healthy}"
        )


@dataclass
class StatsCollector:
    """Thread-safe counters behind :class:`DatabaseStats`."""

    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    total_query_ms: float = 0.0
    slowest_query_ms: float = 0.0
    fastest_query_ms: float | None = None

    total_transactions: int = 0
    committed_transactions: int = 0
    rolled_back_transactions: int = 0

    started_at: float = field(default_factory=time.monotonic)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def record_query(self, elapsed_ms: float, *, success: bool) -> None:
        with self._lock:
            self.total_queries += 1
            if success:
                self.successful_queries += 1
            else:
                self.failed_queries += 1
            self.total_query_ms += elapsed_ms
            self.slowest_query_ms = max(self.slowest_query_ms, elapsed_ms)
            if self.fastest_query_ms is None or elapsed_ms < self.fastest_query_ms:
                self.fastest_query_ms = elapsed_ms

    def record_transaction_started(self) -> None:
        with self._lock:
            self.total_transactions += 1

    def record_commit(self) -> None:
        with self._lock:
            self.committed_transactions += 1

    def record_rollback(self) -> None:
        with self._lock:
            self.rolled_back_transactions += 1

    def snapshot(self, *, total_connections: int, active_connections: int) -> DatabaseStats:
        with self._lock:
            average = self.total_query_ms / self.total_queries if self.total_queries else 0.0
            return DatabaseStats(
                total_connections=total_connections,
                active_connections=active_connections,
                idle_connections=max(total_connections - active_connections, 0),
                total_queries=self.total_queries,
                successful_queries=self.successful_queries,
                failed_queries=self.failed_queries,
                average_query_ms=average,
                slowest_query_ms=self.slowest_query_ms,
                fastest_query_ms=self.fastest_query_ms or 0.0,
                total_transactions=self.total_transactions,
                committed_transactions=self.committed_transactions,
                rolled_back_transactions=self.rolled_back_transactions,
                uptime_seconds=time.monotonic() - self.started_at,
            )


__all__ = ["DatabaseStats", "StatsCollector"]
