"""Stop criteria evaluated once per node before any split attempt.

Checks run in a fixed precedence; the first match wins:
1. no matching rows            -> prune (parent drops the node)
2. depth >= max_depth          -> leaf "max_depth_reached"
3. no remaining columns        -> leaf "last_attribute"
4. count <= 1 or <= limit      -> leaf "below_child_record_count_limit"
5. CoV below cv_limit          -> leaf "below_cv_threshold"
6. otherwise                   -> continue to splitting
"""

import logging
from dataclasses import dataclass
from typing import Literal, Sequence

from ..core.errors import ValidationFailure
from ..core.models import Leaf, NodeStats, PartitionContext, TrainingParameters

logger = logging.getLogger(__name__)


STOP_MAX_DEPTH = "max_depth_reached"
STOP_LAST_ATTRIBUTE = "last_attribute"
STOP_RECORD_COUNT = "below_child_record_count_limit"
STOP_CV_THRESHOLD = "below_cv_threshold"


@dataclass(frozen=True)
class StopDecision:
    """What a node does after its statistics are known."""

    action: Literal["prune", "leaf", "continue"]
    leaf: Leaf | None = None
    coefficient_of_variation: float | None = None

    @classmethod
    def prune(cls) -> "StopDecision":
        return cls(action="prune")

    @property
    def is_prune(self) -> bool:
        return self.action == "prune"

    @property
    def is_leaf(self) -> bool:
        return self.action == "leaf"

    @property
    def should_split(self) -> bool:
        return self.action == "continue"


def coefficient_of_variation(stats: NodeStats, decimal_places: int) -> float:
    """stddev / mean * 100, defined as 0 when the mean is 0, rounded."""
    if not stats.mean:
        return 0.0
    stddev = stats.stddev or 0.0
    return round(stddev / stats.mean * 100, decimal_places)


def format_cv(value: float, decimal_places: int) -> str:
    """Fixed-point text of a coefficient of variation, as stored on branches."""
    return f"{value:.{decimal_places}f}"


def _leaf(stats: NodeStats, params: TrainingParameters, stopped_on: str, detail: str | None) -> Leaf:
    return Leaf(
        prediction=round(stats.mean, params.average_decimal_places),
        stopped_on=stopped_on,
        stop_detail=detail,
    )


def evaluate_stop_criteria(
    stats: NodeStats,
    depth: int,
    remaining_columns: Sequence[str],
    params: TrainingParameters,
) -> StopDecision:
    """Decide whether a node is pruned, becomes a leaf, or is split.

    Args:
        stats: Node statistics from the provider
        depth: Node depth (root = 0)
        remaining_columns: Columns still available for splitting
        params: Training parameters

    Returns:
        StopDecision; for leaves, ``leaf`` holds the finished node
    """
    if stats.mean is None:
        return StopDecision.prune()

    if depth >= params.max_depth:
        return StopDecision(
            action="leaf",
            leaf=_leaf(stats, params, STOP_MAX_DEPTH, f"limit {params.max_depth}, value {depth}"),
        )

    if not remaining_columns:
        return StopDecision(action="leaf", leaf=_leaf(stats, params, STOP_LAST_ATTRIBUTE, None))

    if stats.count <= 1 or stats.count <= params.total_count_limit:
        return StopDecision(
            action="leaf",
            leaf=_leaf(
                stats,
                params,
                STOP_RECORD_COUNT,
                f"limit {params.total_count_limit}, value {stats.count}",
            ),
        )

    cv = coefficient_of_variation(stats, params.cv_decimal_places)
    if cv < params.cv_limit:
        return StopDecision(
            action="leaf",
            leaf=_leaf(
                stats,
                params,
                STOP_CV_THRESHOLD,
                f"limit {params.cv_limit}, value {format_cv(cv, params.cv_decimal_places)}",
            ),
            coefficient_of_variation=cv,
        )

    return StopDecision(action="continue", coefficient_of_variation=cv)


def validate_split_preconditions(stats: NodeStats, ctx: PartitionContext | None = None) -> None:
    """Raise ValidationFailure if a node about to split has no rows or no spread.

    Both states should have been stopped by the count and CoV checks; reaching
    here means the statistics provider broke its contract.
    """
    depth = ctx.depth if ctx else None
    filter_columns = ctx.filter_columns if ctx else ()
    filter_bindings = ctx.filter_bindings if ctx else ()

    if stats.count == 0:
        raise ValidationFailure(
            "The number of records during split selection was zero",
            depth=depth,
            filter_columns=filter_columns,
            filter_bindings=filter_bindings,
        )
    if not stats.stddev:
        raise ValidationFailure(
            "The standard deviation during split selection was zero",
            depth=depth,
            filter_columns=filter_columns,
            filter_bindings=filter_bindings,
        )
