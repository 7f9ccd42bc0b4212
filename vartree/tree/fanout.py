"""Fan-out of one node into concurrent child evaluations, and the join.

One asyncio task is spawned per distinct value of the split column, each
after claiming a slot on the build's NodeLimiter, so a wide column queues
its children instead of spawning them all at once. The parent waits for
every task to report (ok, pruned or failed) before the branch is
assembled; there is no early return.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

from ..core.models import BranchOutcome, ChildEdge, FailedLeaf, PartitionContext
from ..core.providers.base import StatsProvider
from ..core.rate_limiter import NodeLimiter, NodeSlot
from .execution import QueryRunner

logger = logging.getLogger(__name__)

Evaluate = Callable[[PartitionContext, NodeSlot | None], Awaitable[BranchOutcome]]


def _value_sort_key(value: Any) -> tuple[int, Any]:
    if isinstance(value, (bool, int, float)):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, repr(value))


def order_values(values: Iterable[Any]) -> list[Any]:
    """Deduplicate, drop NULLs and sort distinct values deterministically.

    NULL is dropped because ``column = NULL`` never matches a row; numbers
    sort before strings, which sort before anything else. Values that are
    equal under SQL equality (``True`` and ``1``, ``1`` and ``1.0``) select
    the same rows, so they share one partition.
    """
    unique: dict[Any, None] = {}
    for value in values:
        if value is None:
            continue
        unique.setdefault(value, None)
    return sorted(unique, key=_value_sort_key)


def child_contexts(
    ctx: PartitionContext, column: str, values: Iterable[Any]
) -> list[tuple[Any, PartitionContext]]:
    """One fresh child context per value of ``column``."""
    return [(value, ctx.child(column, value)) for value in values]


async def join_children(
    evaluate: Evaluate,
    children: list[tuple[Any, PartitionContext]],
    limiter: NodeLimiter | None = None,
) -> list[BranchOutcome]:
    """Spawn one evaluation per child and wait for all of them.

    With a ``limiter``, each child is spawned only once a slot is free and
    receives that slot; the slot is released when the child hands it back
    or its task ends, whichever comes first.

    A fatal error from any child cancels the siblings that are still running
    and propagates; otherwise the outcomes come back in ``children`` order.
    """
    tasks: list[asyncio.Task] = []
    try:
        for _, child_ctx in children:
            slot = await limiter.acquire() if limiter is not None else None
            task = asyncio.create_task(
                evaluate(child_ctx, slot), name=f"node:{child_ctx.describe()}"
            )
            if slot is not None:
                task.add_done_callback(lambda _, s=slot: s.release())
            tasks.append(task)
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def edges_from_outcomes(
    column: str,
    children: list[tuple[Any, PartitionContext]],
    outcomes: list[BranchOutcome],
) -> list[ChildEdge]:
    """Turn joined outcomes into child edges; pruned children are omitted."""
    edges = []
    for (value, _), outcome in zip(children, outcomes):
        if outcome.is_pruned:
            continue
        if outcome.is_failed:
            subtree = FailedLeaf(error=str(outcome.error))
        else:
            subtree = outcome.node
        edges.append(ChildEdge(attribute=column, operator="=", value=value, subtree=subtree))
    return edges


async def fan_out(
    evaluate: Evaluate,
    provider: StatsProvider,
    runner: QueryRunner,
    ctx: PartitionContext,
    column: str,
    limiter: NodeLimiter | None = None,
    slot: NodeSlot | None = None,
) -> list[ChildEdge]:
    """Split ``ctx`` on ``column`` and evaluate every partition concurrently.

    Args:
        evaluate: Node evaluation coroutine (the tree builder's)
        provider: Statistics provider
        runner: Query runner for the distinct values query
        ctx: Parent partition context
        column: Selected split column
        limiter: Node limiter the children are spawned under
        slot: The parent's own slot, released before its children spawn

    Returns:
        Child edges in distinct-value order, pruned partitions omitted
    """
    values = await runner.run(
        "distinct_values",
        ctx,
        lambda: provider.distinct_values(ctx.table_name, column),
    )
    ordered = order_values(values)
    if len(ordered) < len(values):
        logger.debug(f"[FANOUT] {ctx.describe()}: dropped NULL/duplicate values of {column}")

    children = child_contexts(ctx, column, ordered)
    if slot is not None:
        slot.release()
    logger.info(
        f"[FANOUT] depth {ctx.depth}: splitting {ctx.describe()} on {column} "
        f"into {len(children)} partition(s)"
    )

    outcomes = await join_children(evaluate, children, limiter)
    edges = edges_from_outcomes(column, children, outcomes)

    pruned = sum(1 for o in outcomes if o.is_pruned)
    failed = sum(1 for o in outcomes if o.is_failed)
    logger.info(
        f"[FANOUT] depth {ctx.depth}: {len(outcomes)}/{len(children)} children reported "
        f"({pruned} pruned, {failed} failed)"
    )
    return edges
