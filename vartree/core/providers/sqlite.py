"""SQLite statistics provider.

Phrases every statistic as a group-wise aggregate query (COUNT/SUM/AVG) and
derives sample standard deviations from sums of squares, since SQLite has
no STDDEV aggregate. Queries run on a small pool of connections in worker
threads so the event loop never blocks on disk I/O.
"""

from __future__ import annotations

import asyncio
import logging
import math
import queue
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Sequence

from ..models import ColumnReduction, NodeStats, quote_identifier, render_filter_predicate
from .base import StatsProvider, reduction_from_groups, sample_stddev
from .logging import log_query

logger = logging.getLogger(__name__)


class SQLiteStatsProvider(StatsProvider):
    """Answers node and column statistics from a SQLite database file."""

    provider_name = "sqlite"

    def __init__(
        self,
        database: Path | str,
        pool_size: int = 4,
        log_queries: bool = False,
    ):
        """Open the connection pool.

        Args:
            database: Path to the SQLite file (":memory:" uses a single connection)
            pool_size: Number of pooled connections
            log_queries: Write a JSON debug record per query under ./logs
        """
        self.database = str(database)
        if self.database == ":memory:":
            pool_size = 1
        elif not Path(self.database).exists():
            raise FileNotFoundError(f"SQLite database not found: {self.database}")
        self.pool_size = max(1, pool_size)
        self.log_queries = log_queries
        self._pool: queue.Queue[sqlite3.Connection] = queue.Queue()
        self._connections: list[sqlite3.Connection] = []
        for _ in range(self.pool_size):
            conn = sqlite3.connect(self.database, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._connections.append(conn)
            self._pool.put(conn)
        self._closed = False

    @property
    def connection(self) -> sqlite3.Connection:
        """First pooled connection (for loading data in tests and scripts)."""
        return self._connections[0]

    def _execute(
        self,
        operation: str,
        sql: str,
        params: Sequence[Any],
        abandoned: threading.Event | None = None,
        running: list[sqlite3.Connection] | None = None,
    ) -> list[sqlite3.Row]:
        if self._closed:
            raise RuntimeError("SQLiteStatsProvider is closed")
        conn = self._pool.get()
        start = time.monotonic()
        try:
            if running is not None:
                running.append(conn)
            if abandoned is not None and abandoned.is_set():
                raise sqlite3.OperationalError("interrupted")
            rows = conn.execute(sql, tuple(params)).fetchall()
        finally:
            if running is not None:
                running.remove(conn)
            self._pool.put(conn)
        elapsed = time.monotonic() - start
        logger.debug(f"[QUERY] {operation}: {len(rows)} row(s) in {elapsed * 1000:.1f}ms")
        if self.log_queries:
            log_query(
                operation,
                sql,
                params,
                provider=self.provider_name,
                row_count=len(rows),
                elapsed_seconds=elapsed,
            )
        return rows

    async def _run(self, operation: str, sql: str, params: Sequence[Any]) -> list[sqlite3.Row]:
        """Run one query in a worker thread.

        A cancelled caller (query timeout, build abort) interrupts the
        connection and waits for the worker to let go of it, so a query slot
        is never released while its query still runs.
        """
        abandoned = threading.Event()
        running: list[sqlite3.Connection] = []
        future = asyncio.get_running_loop().run_in_executor(
            None, self._execute, operation, sql, params, abandoned, running
        )
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            abandoned.set()
            for conn in list(running):
                conn.interrupt()
            await asyncio.gather(future, return_exceptions=True)
            logger.debug(f"[QUERY] {operation}: abandoned query stopped")
            raise

    async def node_stats(
        self,
        table: str,
        filter_columns: Sequence[str],
        bindings: Sequence[Any],
        target: str,
    ) -> NodeStats:
        t = quote_identifier(target)
        sql = (
            f"SELECT COUNT(*) AS target_count, "
            f"COUNT({t}) AS target_n, "
            f"AVG({t}) AS target_avg, "
            f"SUM({t}) AS target_sum, "
            f"SUM({t} * {t}) AS target_sumsq "
            f"FROM {quote_identifier(table)} "
            f"WHERE {render_filter_predicate(tuple(filter_columns))}"
        )
        rows = await self._run("node_stats", sql, bindings)
        row = rows[0]
        count = int(row["target_count"] or 0)
        mean = row["target_avg"]
        if mean is None:
            return NodeStats(mean=None, stddev=None, count=count)
        stddev = sample_stddev(
            int(row["target_n"]), float(row["target_sum"]), float(row["target_sumsq"])
        )
        return NodeStats(mean=float(mean), stddev=stddev, count=count)

    async def column_variance_reduction(
        self,
        table: str,
        filter_columns: Sequence[str],
        bindings: Sequence[Any],
        target: str,
        candidates: Sequence[str],
        prior_stddev: float,
    ) -> list[ColumnReduction]:
        if not candidates:
            return []
        t = quote_identifier(target)
        where = render_filter_predicate(tuple(filter_columns))
        subqueries = []
        params: list[Any] = []
        for column in candidates:
            c = quote_identifier(column)
            subqueries.append(
                f"SELECT '{column}' AS col, "
                f"COUNT(*) AS group_rows, "
                f"COUNT({c}) AS count_branch, "
                f"COUNT({t}) AS target_n, "
                f"SUM({t}) AS target_sum, "
                f"SUM({t} * {t}) AS target_sumsq "
                f"FROM {quote_identifier(table)} WHERE {where} GROUP BY {c}"
            )
            params.extend(bindings)
        sql = " UNION ALL ".join(subqueries)
        rows = await self._run("column_variance_reduction", sql, params)

        totals: dict[str, int] = {column: 0 for column in candidates}
        groups: dict[str, list[tuple[int, float | None]]] = {column: [] for column in candidates}
        for row in rows:
            column = row["col"]
            totals[column] += int(row["group_rows"])
            n = int(row["target_n"] or 0)
            stddev = (
                sample_stddev(n, float(row["target_sum"]), float(row["target_sumsq"]))
                if n
                else None
            )
            groups[column].append((int(row["count_branch"]), stddev))

        reductions = []
        for column in candidates:
            if not groups[column]:
                continue
            reduction = reduction_from_groups(prior_stddev, totals[column], groups[column])
            if math.isfinite(reduction):
                reductions.append(ColumnReduction(column=column, reduction=reduction))
        reductions.sort(key=lambda r: r.reduction, reverse=True)
        return reductions

    async def distinct_values(self, table: str, column: str) -> list[Any]:
        c = quote_identifier(column)
        sql = f"SELECT DISTINCT {c} AS value FROM {quote_identifier(table)}"
        rows = await self._run("distinct_values", sql, ())
        return [row["value"] for row in rows]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for conn in self._connections:
            conn.close()

    async def close_async(self) -> None:
        self.close()
