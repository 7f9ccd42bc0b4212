"""Statistics provider tests.

Runs the same aggregate queries against the SQLite and in-memory providers
and checks they agree, plus the shared helpers in providers/base.py and the
query debug log.
"""

import asyncio
import json
import math
import threading

import pytest

from vartree.core.providers import BUILTIN_PROVIDERS, get_provider
from vartree.core.providers.base import reduction_from_groups, sample_stddev
from vartree.core.providers.logging import log_query
from vartree.core.providers.memory import InMemoryStatsProvider
from vartree.core.providers.sqlite import SQLiteStatsProvider


@pytest.fixture
def providers(sales_gap_sqlite, sales_gap_provider):
    sqlite_provider = SQLiteStatsProvider(sales_gap_sqlite)
    yield sqlite_provider, sales_gap_provider
    sqlite_provider.close()


def _both(providers, method, *args):
    async def run():
        return await asyncio.gather(*(getattr(p, method)(*args) for p in providers))

    return asyncio.run(run())


# =============================================================================
# Helpers
# =============================================================================


class TestSampleStddev:
    def test_no_rows(self):
        assert sample_stddev(0, 0.0, 0.0) is None

    def test_single_row_is_zero(self):
        assert sample_stddev(1, 5.0, 25.0) == 0.0

    def test_two_rows(self):
        # 10 and 12: variance 2
        assert sample_stddev(2, 22.0, 244.0) == pytest.approx(math.sqrt(2))

    def test_cancellation_never_negative(self):
        value = 1e8 + 0.1
        assert sample_stddev(3, 3 * value, 3 * value * value) >= 0.0


class TestReductionFromGroups:
    def test_weighted_by_group_size(self):
        reduction = reduction_from_groups(10.0, 4, [(2, 1.0), (2, 3.0)])
        assert reduction == pytest.approx(8.0)

    def test_undefined_groups_skipped(self):
        reduction = reduction_from_groups(10.0, 4, [(2, 1.0), (0, None)])
        assert reduction == pytest.approx(9.5)

    def test_empty_total(self):
        assert reduction_from_groups(10.0, 0, []) == 0.0


# =============================================================================
# Provider agreement
# =============================================================================


class TestNodeStats:
    def test_whole_table(self, providers):
        from_sqlite, from_memory = _both(providers, "node_stats", "sales", (), (), "cnt")
        for stats in (from_sqlite, from_memory):
            assert stats.count == 10
            assert stats.mean == pytest.approx(192.8)
        assert from_sqlite.stddev == pytest.approx(from_memory.stddev)

    def test_filtered(self, providers):
        results = _both(providers, "node_stats", "sales", ("region", "product"), ("A", "y"), "cnt")
        for stats in results:
            assert stats.count == 2
            assert stats.mean == pytest.approx(51.0)
            assert stats.stddev == pytest.approx(math.sqrt(2))

    def test_empty_partition_has_no_mean(self, providers):
        results = _both(providers, "node_stats", "sales", ("region", "product"), ("A", "z"), "cnt")
        for stats in results:
            assert stats.mean is None
            assert stats.stddev is None
            assert stats.count == 0
            assert stats.is_empty


class TestColumnVarianceReduction:
    def test_providers_agree(self, providers):
        async def run(provider):
            stats = await provider.node_stats("sales", (), (), "cnt")
            return await provider.column_variance_reduction(
                "sales", (), (), "cnt", ["region", "product"], stats.stddev
            )

        async def main():
            return await asyncio.gather(*(run(p) for p in providers))

        from_sqlite, from_memory = asyncio.run(main())
        assert [r.column for r in from_sqlite] == [r.column for r in from_memory]
        assert from_sqlite[0].column == "product"
        for a, b in zip(from_sqlite, from_memory):
            assert a.reduction == pytest.approx(b.reduction)

    def test_sorted_best_first(self, providers):
        results = _both(
            providers, "column_variance_reduction", "sales", (), (), "cnt", ["region", "product"], 300.0
        )
        for reductions in results:
            values = [r.reduction for r in reductions]
            assert values == sorted(values, reverse=True)

    def test_only_requested_candidates(self, providers):
        results = _both(
            providers, "column_variance_reduction", "sales", (), (), "cnt", ["region"], 300.0
        )
        for reductions in results:
            assert [r.column for r in reductions] == ["region"]

    def test_empty_partition(self, providers):
        results = _both(
            providers,
            "column_variance_reduction",
            "sales",
            ("region", "product"),
            ("A", "z"),
            "cnt",
            ["region"],
            1.0,
        )
        assert results == [[], []]


class TestDistinctValues:
    def test_whole_table_values(self, providers):
        for values in _both(providers, "distinct_values", "sales", "product"):
            assert sorted(values) == ["x", "y", "z"]

    def test_ignores_filters(self, providers):
        # region A has no product z, but distinct values are table-wide
        for values in _both(providers, "distinct_values", "sales", "region"):
            assert sorted(values) == ["A", "B"]


class TestNullHandling:
    ROWS = [
        {"g": "a", "y": 1.0},
        {"g": "a", "y": 3.0},
        {"g": "a", "y": None},
        {"g": None, "y": 7.0},
    ]

    def _sqlite(self):
        provider = SQLiteStatsProvider(":memory:")
        provider.connection.execute("CREATE TABLE t (g TEXT, y REAL)")
        provider.connection.executemany(
            "INSERT INTO t (g, y) VALUES (?, ?)", [(r["g"], r["y"]) for r in self.ROWS]
        )
        return provider

    def test_null_targets_count_as_rows_not_values(self):
        sqlite_provider = self._sqlite()
        memory_provider = InMemoryStatsProvider({"t": self.ROWS})
        try:
            results = _both((sqlite_provider, memory_provider), "node_stats", "t", ("g",), ("a",), "y")
        finally:
            sqlite_provider.close()
        for stats in results:
            assert stats.count == 3
            assert stats.mean == pytest.approx(2.0)

    def test_null_never_matches_filter(self):
        provider = InMemoryStatsProvider({"t": self.ROWS})
        stats = asyncio.run(provider.node_stats("t", ("g",), (None,), "y"))
        assert stats.is_empty

    def test_distinct_values_may_include_null(self):
        provider = InMemoryStatsProvider({"t": self.ROWS})
        assert set(asyncio.run(provider.distinct_values("t", "g"))) == {"a", None}


# =============================================================================
# Registry and lifecycle
# =============================================================================


class TestRegistry:
    def test_builtin_names(self):
        assert BUILTIN_PROVIDERS == ("memory", "sqlite")

    def test_get_memory_provider(self):
        provider = get_provider("memory", tables={"t": [{"y": 1}]})
        assert isinstance(provider, InMemoryStatsProvider)
        assert provider.provider_name == "memory"

    def test_get_sqlite_provider(self, sales_sqlite):
        provider = get_provider("sqlite", database=sales_sqlite, pool_size=2)
        try:
            assert isinstance(provider, SQLiteStatsProvider)
            assert provider.pool_size == 2
        finally:
            provider.close()

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown statistics provider"):
            get_provider("oracle")

    def test_missing_sqlite_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_provider("sqlite", database=tmp_path / "nope.sqlite")

    def test_unknown_memory_table(self):
        provider = InMemoryStatsProvider()
        with pytest.raises(KeyError):
            asyncio.run(provider.node_stats("missing", (), (), "y"))


class TestSQLiteLifecycle:
    def test_closed_provider_rejects_queries(self, sales_sqlite):
        provider = SQLiteStatsProvider(sales_sqlite)
        asyncio.run(provider.close_async())
        with pytest.raises(RuntimeError, match="closed"):
            asyncio.run(provider.node_stats("sales", (), (), "cnt"))

    def test_close_is_idempotent(self, sales_sqlite):
        provider = SQLiteStatsProvider(sales_sqlite)
        provider.close()
        provider.close()

    def test_cancelled_query_is_interrupted_before_returning(self):
        provider = SQLiteStatsProvider(":memory:")
        started = threading.Event()

        def mark(value):
            started.set()
            return value

        provider.connection.create_function("mark", 1, mark)
        sql = (
            "WITH RECURSIVE c(x) AS (SELECT mark(1) UNION ALL "
            "SELECT x + 1 FROM c WHERE x < 50000000) SELECT count(*) AS n FROM c"
        )

        async def main():
            task = asyncio.create_task(provider._run("long_scan", sql, ()))
            await asyncio.get_running_loop().run_in_executor(None, started.wait, 5.0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            # The worker has stopped and handed its connection back
            assert provider._pool.qsize() == 1
            rows = await provider._run("quick", "SELECT 1 AS one", ())
            return rows[0]["one"]

        try:
            assert asyncio.run(main()) == 1
        finally:
            provider.close()

    def test_rejects_unsafe_identifiers(self, sales_sqlite):
        provider = SQLiteStatsProvider(sales_sqlite)
        try:
            with pytest.raises(ValueError, match="Invalid identifier"):
                asyncio.run(provider.node_stats("sales; DROP TABLE sales", (), (), "cnt"))
        finally:
            provider.close()


class TestQueryLog:
    def test_log_query_writes_sanitized_record(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = log_query(
            "node_stats",
            "SELECT 1",
            ["a" * 300, b"\x00\x01"],
            provider="sqlite",
            row_count=1,
            elapsed_seconds=0.123456,
            meta={"api_key": "sk-123", "table": "sales"},
        )

        assert path is not None
        assert path.parent == tmp_path / "logs"
        assert path.name.endswith("_sqlite_node_stats.json")
        data = json.loads(path.read_text())
        assert data["bindings"][0].endswith("...[truncated]")
        assert data["bindings"][1] == "[BINARY length=2]"
        assert data["meta"] == {"api_key": "[REDACTED_SECRET]", "table": "sales"}
        assert data["elapsed_seconds"] == 0.1235

    def test_sqlite_provider_logs_when_enabled(self, tmp_path, monkeypatch, sales_sqlite):
        monkeypatch.chdir(tmp_path)
        provider = SQLiteStatsProvider(sales_sqlite, log_queries=True)
        try:
            asyncio.run(provider.distinct_values("sales", "region"))
        finally:
            provider.close()

        files = list((tmp_path / "logs").glob("*_sqlite_distinct_values.json"))
        assert len(files) == 1
        assert "SELECT DISTINCT" in json.loads(files[0].read_text())["sql"]
