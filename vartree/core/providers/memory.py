"""In-memory statistics provider over a list of row dicts.

Useful for tests, notebooks and small tables that are already loaded.
Aggregates are computed the same way as the SQLite provider (count, sum and
sum of squares per group) so both produce identical trees.
"""

from __future__ import annotations

import math
from collections import defaultdict
from typing import Any, Iterable, Sequence

from ..models import ColumnReduction, NodeStats
from .base import StatsProvider, reduction_from_groups, sample_stddev


class _Accumulator:
    __slots__ = ("rows", "n", "total", "total_sq")

    def __init__(self):
        self.rows = 0
        self.n = 0
        self.total = 0.0
        self.total_sq = 0.0

    def add(self, value: Any) -> None:
        self.rows += 1
        if value is None:
            return
        value = float(value)
        self.n += 1
        self.total += value
        self.total_sq += value * value


class InMemoryStatsProvider(StatsProvider):
    """Answers statistics queries from rows held in memory, keyed by table name."""

    provider_name = "memory"

    def __init__(self, tables: dict[str, Iterable[dict[str, Any]]] | None = None):
        self.tables: dict[str, list[dict[str, Any]]] = {
            name: list(rows) for name, rows in (tables or {}).items()
        }

    def add_table(self, name: str, rows: Iterable[dict[str, Any]]) -> None:
        self.tables[name] = list(rows)

    def _rows(self, table: str) -> list[dict[str, Any]]:
        if table not in self.tables:
            raise KeyError(f"Unknown table: {table!r}")
        return self.tables[table]

    def _filtered(
        self, table: str, filter_columns: Sequence[str], bindings: Sequence[Any]
    ) -> list[dict[str, Any]]:
        conjuncts = list(zip(filter_columns, bindings))
        return [
            row
            for row in self._rows(table)
            # SQL equality: NULL never matches
            if all(row.get(col) is not None and row.get(col) == val for col, val in conjuncts)
        ]

    async def node_stats(
        self,
        table: str,
        filter_columns: Sequence[str],
        bindings: Sequence[Any],
        target: str,
    ) -> NodeStats:
        acc = _Accumulator()
        for row in self._filtered(table, filter_columns, bindings):
            acc.add(row.get(target))
        if acc.n == 0:
            return NodeStats(mean=None, stddev=None, count=acc.rows)
        return NodeStats(
            mean=acc.total / acc.n,
            stddev=sample_stddev(acc.n, acc.total, acc.total_sq),
            count=acc.rows,
        )

    async def column_variance_reduction(
        self,
        table: str,
        filter_columns: Sequence[str],
        bindings: Sequence[Any],
        target: str,
        candidates: Sequence[str],
        prior_stddev: float,
    ) -> list[ColumnReduction]:
        rows = self._filtered(table, filter_columns, bindings)
        if not rows:
            return []
        reductions = []
        for column in candidates:
            by_value: dict[Any, _Accumulator] = defaultdict(_Accumulator)
            for row in rows:
                by_value[row.get(column)].add(row.get(target))
            groups = []
            for value, acc in by_value.items():
                count_branch = 0 if value is None else acc.rows
                stddev = sample_stddev(acc.n, acc.total, acc.total_sq) if acc.n else None
                groups.append((count_branch, stddev))
            reduction = reduction_from_groups(prior_stddev, len(rows), groups)
            if math.isfinite(reduction):
                reductions.append(ColumnReduction(column=column, reduction=reduction))
        reductions.sort(key=lambda r: r.reduction, reverse=True)
        return reductions

    async def distinct_values(self, table: str, column: str) -> list[Any]:
        seen: dict[Any, None] = {}
        for row in self._rows(table):
            seen.setdefault(row.get(column), None)
        return list(seen)
