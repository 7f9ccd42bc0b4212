"""Abstract base class for aggregate statistics providers."""

from abc import ABC, abstractmethod
from typing import Any, Sequence

from ..models import ColumnReduction, NodeStats


class StatsProvider(ABC):
    """Answers the aggregate queries a tree build needs.

    All providers must implement these methods with the same signatures
    to ensure drop-in compatibility. Filters are equality conjunctions:
    ``filter_columns[i] = bindings[i]`` for every i.

    A cancelled call must not return before its query has stopped running;
    the caller's query slot is released as soon as the call returns.
    """

    # Provider name for limiter defaults and logging (override in subclasses)
    provider_name: str = "unknown"

    @abstractmethod
    async def node_stats(
        self,
        table: str,
        filter_columns: Sequence[str],
        bindings: Sequence[Any],
        target: str,
    ) -> NodeStats:
        """Mean, sample standard deviation and row count of ``target``.

        ``mean`` and ``stddev`` are None when no row matches the filter.
        """
        ...

    @abstractmethod
    async def column_variance_reduction(
        self,
        table: str,
        filter_columns: Sequence[str],
        bindings: Sequence[Any],
        target: str,
        candidates: Sequence[str],
        prior_stddev: float,
    ) -> list[ColumnReduction]:
        """Standard deviation reduction per candidate column, best first.

        reduction = prior_stddev - sum(count_group / count_total * stddev_group)
        over the candidate's value groups within the filtered rows.
        """
        ...

    @abstractmethod
    async def distinct_values(self, table: str, column: str) -> list[Any]:
        """Distinct values of ``column`` across the whole (unfiltered) table."""
        ...

    async def close_async(self) -> None:
        """Release connections. Must be called before the event loop shuts down."""
        return None


def reduction_from_groups(
    prior_stddev: float,
    total_count: int,
    groups: Sequence[tuple[int, float | None]],
) -> float:
    """Compute a standard deviation reduction from (count, stddev) groups.

    Groups whose stddev is undefined (no non-null target rows) contribute nothing.
    """
    if total_count <= 0:
        return 0.0
    weighted = 0.0
    for count, stddev in groups:
        if stddev is None:
            continue
        weighted += count / total_count * stddev
    return prior_stddev - weighted


def sample_stddev(count: int, total: float, total_sq: float) -> float | None:
    """Sample standard deviation from count, sum and sum of squares."""
    if count < 2:
        return None if count < 1 else 0.0
    variance = (total_sq - total * total / count) / (count - 1)
    # Guard against tiny negative values from floating point cancellation
    return max(variance, 0.0) ** 0.5
