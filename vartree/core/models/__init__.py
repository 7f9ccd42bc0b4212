"""All Pydantic models for vartree, organized by domain.

- tree.py: training parameters, partition contexts, tree nodes, serialization
- build.py: build requests (YAML specs) and build results
"""

from .tree import (
    # Identifiers
    is_valid_identifier,
    quote_identifier,
    render_filter_predicate,
    # Parameters and contexts
    TrainingParameters,
    PartitionContext,
    # Provider results
    NodeStats,
    ColumnReduction,
    # Nodes
    Leaf,
    Branch,
    FailedLeaf,
    ChildEdge,
    TreeNode,
    BranchOutcome,
    # Serialization
    tree_to_json,
    tree_from_json,
)
from .build import BuildRequest, BuildResult

__all__ = [
    "is_valid_identifier",
    "quote_identifier",
    "render_filter_predicate",
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
    "tree_to_json",
    "tree_from_json",
    "BuildRequest",
    "BuildResult",
]
