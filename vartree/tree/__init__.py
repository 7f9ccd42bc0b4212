"""Tree building: stop criteria, split selection, fan-out and the builder."""

from .builder import DEFAULT_ALGORITHM, TreeBuilder
from .execution import CancelToken, QueryRunner
from .fanout import fan_out, order_values
from .predict import count_nodes, predict_row, predict_rows, tree_depth
from .progress import BuildProgress
from .selector import choose_best_column, select_split_column, split_candidates
from .stopping import (
    STOP_CV_THRESHOLD,
    STOP_LAST_ATTRIBUTE,
    STOP_MAX_DEPTH,
    STOP_RECORD_COUNT,
    StopDecision,
    coefficient_of_variation,
    evaluate_stop_criteria,
    validate_split_preconditions,
)

__all__ = [
    "DEFAULT_ALGORITHM",
    "TreeBuilder",
    "CancelToken",
    "QueryRunner",
    "fan_out",
    "order_values",
    "predict_row",
    "predict_rows",
    "tree_depth",
    "count_nodes",
    "BuildProgress",
    "choose_best_column",
    "select_split_column",
    "split_candidates",
    "STOP_CV_THRESHOLD",
    "STOP_LAST_ATTRIBUTE",
    "STOP_MAX_DEPTH",
    "STOP_RECORD_COUNT",
    "StopDecision",
    "coefficient_of_variation",
    "evaluate_stop_criteria",
    "validate_split_preconditions",
]
