"""Shared fixtures: sample tables, instrumented providers and config isolation."""

import asyncio
import sqlite3

import pytest

from vartree import config as config_module
from vartree.core.models import BuildRequest, ColumnReduction, NodeStats, TrainingParameters
from vartree.core.providers.base import StatsProvider
from vartree.core.providers.memory import InMemoryStatsProvider
from vartree.core.rate_limiter import QueryLimiter
from vartree.tree.execution import CancelToken, QueryRunner
from vartree.tree.progress import BuildProgress


# Two regions x two products, two rows each. Splitting on region first gives
# the larger reduction; every (region, product) cell ends on last_attribute.
SALES_ROWS = [
    {"region": "A", "product": "x", "cnt": 10},
    {"region": "A", "product": "x", "cnt": 12},
    {"region": "A", "product": "y", "cnt": 50},
    {"region": "A", "product": "y", "cnt": 52},
    {"region": "B", "product": "x", "cnt": 100},
    {"region": "B", "product": "x", "cnt": 102},
    {"region": "B", "product": "y", "cnt": 200},
    {"region": "B", "product": "y", "cnt": 202},
]

# Same table plus a widely spread product that only exists in region B: the
# root splits on product, and the product=z, region=A partition is empty.
SALES_ROWS_WITH_GAP = SALES_ROWS + [
    {"region": "B", "product": "z", "cnt": 300},
    {"region": "B", "product": "z", "cnt": 900},
]


class CountingProvider(StatsProvider):
    """Wraps another provider and records every call.

    ``fail_when(operation, bindings)`` returning True makes that call raise;
    ``delay`` makes node_stats sleep first.
    """

    def __init__(self, inner: StatsProvider, fail_when=None, delay: float = 0.0):
        self.inner = inner
        self.provider_name = inner.provider_name
        self.fail_when = fail_when
        self.delay = delay
        self.calls: list[tuple] = []
        self.closed = False

    def _check(self, operation, bindings):
        if self.fail_when is not None and self.fail_when(operation, tuple(bindings)):
            raise RuntimeError(f"{operation} unavailable")

    async def node_stats(self, table, filter_columns, bindings, target):
        self.calls.append(("node_stats", tuple(filter_columns), tuple(bindings)))
        if self.delay:
            await asyncio.sleep(self.delay)
        self._check("node_stats", bindings)
        return await self.inner.node_stats(table, filter_columns, bindings, target)

    async def column_variance_reduction(
        self, table, filter_columns, bindings, target, candidates, prior_stddev
    ):
        self.calls.append(
            ("column_variance_reduction", tuple(filter_columns), tuple(bindings), tuple(candidates))
        )
        self._check("column_variance_reduction", bindings)
        return await self.inner.column_variance_reduction(
            table, filter_columns, bindings, target, candidates, prior_stddev
        )

    async def distinct_values(self, table, column):
        self.calls.append(("distinct_values", column))
        self._check("distinct_values", ())
        return await self.inner.distinct_values(table, column)

    async def close_async(self):
        self.closed = True
        await self.inner.close_async()

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)


class ScriptedProvider(StatsProvider):
    """Answers from fixed tables instead of data.

    - stats: bindings tuple -> NodeStats (``default_stats`` otherwise)
    - reductions: column -> reduction, reported only for requested candidates
    - distinct: column -> list of values
    """

    provider_name = "scripted"

    def __init__(self, stats=None, default_stats=None, reductions=None, distinct=None):
        self.stats = stats or {}
        self.default_stats = default_stats or NodeStats()
        self.reductions = reductions or {}
        self.distinct = distinct or {}
        self.requested_candidates: list[tuple[str, ...]] = []

    async def node_stats(self, table, filter_columns, bindings, target):
        return self.stats.get(tuple(bindings), self.default_stats)

    async def column_variance_reduction(
        self, table, filter_columns, bindings, target, candidates, prior_stddev
    ):
        self.requested_candidates.append(tuple(candidates))
        out = [
            ColumnReduction(column=c, reduction=self.reductions[c])
            for c in candidates
            if c in self.reductions
        ]
        return sorted(out, key=lambda r: r.reduction, reverse=True)

    async def distinct_values(self, table, column):
        return list(self.distinct.get(column, []))


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from the user's config file and VARTREE_* env vars."""
    config_dir = tmp_path / "config"
    monkeypatch.setattr(config_module, "CONFIG_DIR", config_dir)
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_dir / "config.json")
    monkeypatch.setattr(config_module, "_dotenv_loaded", True)
    for name in config_module._ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    config_module.reset_config()
    yield
    config_module.reset_config()


@pytest.fixture
def sales_provider():
    return InMemoryStatsProvider({"sales": SALES_ROWS})


@pytest.fixture
def sales_gap_provider():
    return InMemoryStatsProvider({"sales": SALES_ROWS_WITH_GAP})


@pytest.fixture
def sales_request():
    return BuildRequest(
        table_name="sales",
        target_column="cnt",
        columns=["region", "product"],
        training=TrainingParameters(),
    )


def _write_sqlite(path, rows):
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE sales (region TEXT, product TEXT, cnt REAL)")
    conn.executemany(
        "INSERT INTO sales (region, product, cnt) VALUES (?, ?, ?)",
        [(r["region"], r["product"], r["cnt"]) for r in rows],
    )
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def sales_sqlite(tmp_path):
    """SQLite file holding the sales table."""
    return _write_sqlite(tmp_path / "sales.sqlite", SALES_ROWS)


@pytest.fixture
def sales_gap_sqlite(tmp_path):
    return _write_sqlite(tmp_path / "sales_gap.sqlite", SALES_ROWS_WITH_GAP)


@pytest.fixture
def make_runner():
    """Factory for a QueryRunner with no backoff delay."""

    def _make(timeout: float = 5.0, max_retries: int = 2, max_concurrent: int = 4):
        return QueryRunner(
            QueryLimiter(max_concurrent=max_concurrent),
            BuildProgress(),
            CancelToken(),
            timeout=timeout,
            max_retries=max_retries,
            base_delay=0.0,
            max_delay=0.0,
        )

    return _make


@pytest.fixture
def counting():
    """The CountingProvider class (wrap a provider to record its calls)."""
    return CountingProvider


@pytest.fixture
def scripted():
    """The ScriptedProvider class (fixed answers instead of data)."""
    return ScriptedProvider
