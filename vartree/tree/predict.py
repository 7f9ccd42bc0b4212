"""Prediction and summaries over a built tree."""

from __future__ import annotations

from typing import Any, Iterable

from ..core.models import Branch, FailedLeaf, Leaf


def _matches(edge_value: Any, row_value: Any) -> bool:
    if edge_value == row_value:
        return True
    # Rows parsed from JSON or CSV often carry numbers as text
    if isinstance(edge_value, (int, float)) and isinstance(row_value, str):
        try:
            return float(row_value) == float(edge_value)
        except ValueError:
            return False
    return False


def predict_row(tree: Leaf | Branch | FailedLeaf, row: dict[str, Any]) -> float | None:
    """Walk ``tree`` for one row and return the reached leaf's prediction.

    Returns None when the row's value was never seen at some branch, the row
    lacks a split column, or the path ends in a failed branch.
    """
    node = tree
    while isinstance(node, Branch):
        if node.split_column not in row:
            return None
        value = row[node.split_column]
        for edge in node.children:
            if _matches(edge.value, value):
                node = edge.subtree
                break
        else:
            return None
    if isinstance(node, Leaf):
        return node.prediction
    return None


def predict_rows(
    tree: Leaf | Branch | FailedLeaf, rows: Iterable[dict[str, Any]]
) -> list[float | None]:
    return [predict_row(tree, row) for row in rows]


def tree_depth(tree: Leaf | Branch | FailedLeaf) -> int:
    """Number of edges on the longest root-to-leaf path."""
    if not isinstance(tree, Branch) or not tree.children:
        return 0
    return 1 + max(tree_depth(edge.subtree) for edge in tree.children)


def count_nodes(tree: Leaf | Branch | FailedLeaf) -> dict[str, int]:
    """Count branches, leaves and failed leaves."""
    counts = {"branches": 0, "leaves": 0, "failed": 0}
    stack = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, Branch):
            counts["branches"] += 1
            stack.extend(edge.subtree for edge in node.children)
        elif isinstance(node, Leaf):
            counts["leaves"] += 1
        else:
            counts["failed"] += 1
    return counts
