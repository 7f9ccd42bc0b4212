"""vartree: regression decision trees grown from aggregate statistics.

Trees are built by recursively splitting a table on the column with the
greatest standard deviation reduction. Statistics come from a provider
(SQLite, in-memory), every node is evaluated as its own asyncio task, and
each build is recorded in a run ledger.

Usage:
    from vartree import BuildRequest, TreeBuilder, get_provider, open_run_db

    request = BuildRequest.from_yaml("bikes.yaml")
    provider = get_provider("sqlite", database="bikes.sqlite")
    with open_run_db("storage/vartree.db") as ledger:
        result = TreeBuilder(provider, ledger=ledger).build_sync(request)
"""

__version__ = "0.3.0"

from .core.errors import (
    VartreeError,
    ValidationFailure,
    ConfigurationError,
    TransientQueryFailure,
    BuildCancelled,
    TreeBuildError,
)
from .core.models import (
    TrainingParameters,
    PartitionContext,
    NodeStats,
    ColumnReduction,
    Leaf,
    Branch,
    FailedLeaf,
    ChildEdge,
    TreeNode,
    BranchOutcome,
    BuildRequest,
    BuildResult,
    tree_to_json,
    tree_from_json,
)
from .core.providers import get_provider
from .storage import RunDB, open_run_db
from .tree import TreeBuilder, CancelToken, predict_row, predict_rows

__all__ = [
    "__version__",
    "VartreeError",
    "ValidationFailure",
    "ConfigurationError",
    "TransientQueryFailure",
    "BuildCancelled",
    "TreeBuildError",
    "TrainingParameters",
    "PartitionContext",
    "NodeStats",
    "ColumnReduction",
    "Leaf",
    "Branch",
    "FailedLeaf",
    "ChildEdge",
    "TreeNode",
    "BranchOutcome",
    "BuildRequest",
    "BuildResult",
    "tree_to_json",
    "tree_from_json",
    "get_provider",
    "RunDB",
    "open_run_db",
    "TreeBuilder",
    "CancelToken",
    "predict_row",
    "predict_rows",
]
