"""Tests for the fan-out/join of child evaluations (vartree/tree/fanout.py)."""

import asyncio

import pytest

from vartree.core.errors import TransientQueryFailure, ValidationFailure
from vartree.core.models import (
    BranchOutcome,
    FailedLeaf,
    Leaf,
    PartitionContext,
    TrainingParameters,
)
from vartree.core.providers.memory import InMemoryStatsProvider
from vartree.core.rate_limiter import NodeLimiter
from vartree.tree.fanout import child_contexts, fan_out, join_children, order_values


ROOT = PartitionContext(
    table_name="t",
    target_column="y",
    remaining_columns=("season", "holiday"),
    training_parameters=TrainingParameters(),
)


class TestOrderValues:
    def test_drops_nulls_and_duplicates(self):
        assert order_values([3, None, 1, 3, 2]) == [1, 2, 3]

    def test_numbers_before_strings(self):
        assert order_values(["b", 2, "a", 1.5]) == [1.5, 2, "a", "b"]

    def test_order_independent_of_input(self):
        assert order_values(["y", "x", "z"]) == order_values(["z", "y", "x"])

    def test_sql_equal_values_share_a_partition(self):
        assert order_values([1, True, "a", 1.0]) == [1, "a"]

    def test_shared_partition_selects_the_same_rows(self):
        provider = InMemoryStatsProvider(
            {"t": [{"flag": 1, "y": 2.0}, {"flag": True, "y": 4.0}, {"flag": 0, "y": 9.0}]}
        )
        by_int = asyncio.run(provider.node_stats("t", ("flag",), (1,), "y"))
        by_bool = asyncio.run(provider.node_stats("t", ("flag",), (True,), "y"))
        assert by_int == by_bool
        assert by_int.count == 2


class TestChildContexts:
    def test_one_context_per_value(self):
        children = child_contexts(ROOT, "season", [1, 2])
        assert [value for value, _ in children] == [1, 2]
        for value, ctx in children:
            assert ctx.depth == 1
            assert ctx.filter_columns == ("season",)
            assert ctx.filter_bindings == (value,)
            assert ctx.remaining_columns == ("holiday",)

    def test_parent_untouched(self):
        child_contexts(ROOT, "season", [1])
        assert ROOT.filter_columns == ()
        assert ROOT.remaining_columns == ("season", "holiday")


class TestFanOut:
    def test_outcomes_map_to_edges(self, scripted, make_runner):
        provider = scripted(distinct={"season": [3, None, 1, 2]})

        async def evaluate(ctx, slot=None):
            value = ctx.filter_bindings[-1]
            if value == 1:
                return BranchOutcome.ok(Leaf(prediction=10.0))
            if value == 2:
                return BranchOutcome.pruned()
            return BranchOutcome.failed(TransientQueryFailure("node_stats", attempts=3))

        edges = asyncio.run(fan_out(evaluate, provider, make_runner(), ROOT, "season"))

        assert [e.value for e in edges] == [1, 3]
        assert all(e.attribute == "season" and e.operator == "=" for e in edges)
        assert edges[0].subtree.prediction == 10.0
        assert isinstance(edges[1].subtree, FailedLeaf)
        assert "node_stats failed" in edges[1].subtree.error

    def test_all_pruned_gives_no_edges(self, scripted, make_runner):
        provider = scripted(distinct={"season": [1, 2]})

        async def evaluate(ctx, slot=None):
            return BranchOutcome.pruned()

        assert asyncio.run(fan_out(evaluate, provider, make_runner(), ROOT, "season")) == []

    def test_children_run_concurrently(self, scripted, make_runner):
        provider = scripted(distinct={"season": [1, 2, 3]})
        running = 0
        peak = 0

        async def evaluate(ctx, slot=None):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return BranchOutcome.ok(Leaf(prediction=float(ctx.filter_bindings[-1])))

        edges = asyncio.run(fan_out(evaluate, provider, make_runner(), ROOT, "season"))
        assert peak == 3
        assert [e.subtree.prediction for e in edges] == [1.0, 2.0, 3.0]


class TestJoinChildren:
    def test_fatal_error_cancels_siblings(self):
        cancelled = []

        async def evaluate(ctx, slot=None):
            value = ctx.filter_bindings[-1]
            if value == 1:
                await asyncio.sleep(0.01)
                raise ValidationFailure("broken invariant")
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(value)
                raise
            return BranchOutcome.pruned()

        children = child_contexts(ROOT, "season", [1, 2, 3])
        with pytest.raises(ValidationFailure):
            asyncio.run(join_children(evaluate, children))
        assert sorted(cancelled) == [2, 3]

    def test_limiter_queues_children(self):
        limiter = NodeLimiter(max_pending=2)
        running = 0
        peak = 0

        async def evaluate(ctx, slot=None):
            nonlocal running, peak
            assert slot is not None
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return BranchOutcome.ok(Leaf(prediction=float(ctx.filter_bindings[-1])))

        children = child_contexts(ROOT, "season", list(range(10)))
        outcomes = asyncio.run(join_children(evaluate, children, limiter))

        assert [o.node.prediction for o in outcomes] == [float(v) for v in range(10)]
        assert peak == 2
        assert limiter.peak_active == 2
        assert limiter.active == 0
        assert limiter.total_acquired == 10

    def test_child_can_hand_back_its_slot_early(self):
        limiter = NodeLimiter(max_pending=1)

        async def evaluate(ctx, slot=None):
            slot.release()
            slot.release()
            await asyncio.sleep(0.01)
            return BranchOutcome.pruned()

        children = child_contexts(ROOT, "season", [1, 2, 3])
        outcomes = asyncio.run(join_children(evaluate, children, limiter))
        assert all(o.is_pruned for o in outcomes)
        assert limiter.active == 0

    def test_fatal_error_releases_slots(self):
        limiter = NodeLimiter(max_pending=3)

        async def evaluate(ctx, slot=None):
            if ctx.filter_bindings[-1] == 1:
                raise ValidationFailure("broken invariant")
            await asyncio.sleep(5)
            return BranchOutcome.pruned()

        children = child_contexts(ROOT, "season", [1, 2, 3])
        with pytest.raises(ValidationFailure):
            asyncio.run(join_children(evaluate, children, limiter))
        assert limiter.active == 0


class TestFanOutSlots:
    def test_parent_slot_released_before_children(self, scripted, make_runner):
        provider = scripted(distinct={"season": [1, 2]})
        limiter = NodeLimiter(max_pending=1)

        async def evaluate(ctx, slot=None):
            return BranchOutcome.ok(Leaf(prediction=1.0))

        async def run():
            parent_slot = await limiter.acquire()
            edges = await fan_out(
                evaluate, provider, make_runner(), ROOT, "season",
                limiter=limiter, slot=parent_slot,
            )
            return parent_slot, edges

        parent_slot, edges = asyncio.run(run())
        assert parent_slot.released
        assert [e.value for e in edges] == [1, 2]
