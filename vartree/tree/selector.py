"""Split column selection by standard deviation reduction."""

import logging
import math
from typing import Sequence

from ..core.errors import ConfigurationError, ValidationFailure
from ..core.models import ColumnReduction, NodeStats, PartitionContext
from ..core.providers.base import StatsProvider
from .execution import QueryRunner

logger = logging.getLogger(__name__)


def split_candidates(remaining_columns: Sequence[str], max_features: int) -> list[str]:
    """The first ``max_features`` remaining columns, in their existing order.

    This is a fixed prefix, not the best-scoring subset.
    """
    candidates = list(remaining_columns[:max_features])
    if not candidates:
        raise ConfigurationError(
            f"No split candidates (remaining_columns={list(remaining_columns)}, "
            f"max_features={max_features})"
        )
    return candidates


def choose_best_column(
    candidates: Sequence[str],
    reductions: Sequence[ColumnReduction],
) -> ColumnReduction | None:
    """Pick the candidate with the largest reduction.

    Ties go to the candidate listed first in ``candidates``, whatever order
    the provider returned. Columns the provider did not report, columns
    outside ``candidates`` and non-finite reductions are ignored.
    """
    by_column: dict[str, float] = {}
    for r in reductions:
        if r.column in by_column or not math.isfinite(r.reduction):
            continue
        by_column[r.column] = r.reduction

    best: ColumnReduction | None = None
    for column in candidates:
        if column not in by_column:
            continue
        reduction = by_column[column]
        if best is None or reduction > best.reduction:
            best = ColumnReduction(column=column, reduction=reduction)
    return best


async def select_split_column(
    provider: StatsProvider,
    runner: QueryRunner,
    ctx: PartitionContext,
    stats: NodeStats,
) -> ColumnReduction:
    """Query reductions for the candidate columns of a node and pick one.

    Args:
        provider: Statistics provider
        runner: Query runner (limits, timeouts, retries)
        ctx: Node partition context
        stats: Node statistics (``stddev`` is the prior standard deviation)

    Returns:
        The selected column and its reduction

    Raises:
        ConfigurationError: No candidate columns
        ValidationFailure: The provider reported no usable reduction
        TransientQueryFailure: The reduction query kept failing
    """
    params = ctx.training_parameters
    candidates = split_candidates(ctx.remaining_columns, params.max_features)

    reductions = await runner.run(
        "column_variance_reduction",
        ctx,
        lambda: provider.column_variance_reduction(
            ctx.table_name,
            ctx.filter_columns,
            ctx.filter_bindings,
            ctx.target_column,
            candidates,
            stats.stddev,
        ),
    )

    best = choose_best_column(candidates, reductions)
    if best is None:
        raise ValidationFailure(
            f"Provider returned no usable reduction for candidates {candidates}",
            depth=ctx.depth,
            filter_columns=ctx.filter_columns,
            filter_bindings=ctx.filter_bindings,
        )

    logger.debug(
        f"[SPLIT] {ctx.describe()}: selected {best.column} "
        f"(sdr={best.reduction:.4f}, candidates={candidates})"
    )
    return best
