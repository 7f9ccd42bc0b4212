"""Tree models: training parameters, partition contexts and tree nodes.

Node shapes:
- Leaf: terminal node holding a rounded mean prediction
- Branch: split column plus one ChildEdge per non-empty partition
- FailedLeaf: marker for a branch whose statistics queries kept failing

The serialized form (``tree_to_json``) uses camelCase key names so stored
models stay readable by existing consumers.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# SQL identifiers and filter predicates
# =============================================================================

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def is_valid_identifier(name: str) -> bool:
    """Return True if ``name`` is a plain SQL identifier."""
    return bool(_IDENTIFIER_RE.match(name or ""))


def quote_identifier(name: str) -> str:
    """Quote a validated identifier for use in SQL text."""
    if not is_valid_identifier(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return f'"{name}"'


def render_filter_predicate(filter_columns: tuple[str, ...] | list[str]) -> str:
    """Render equality conjuncts as a parameterized WHERE clause.

    Examples:
        () -> '1=1'
        ('season', 'holiday') -> '1=1 AND "season" = ? AND "holiday" = ?'
    """
    clause = "1=1"
    for column in filter_columns:
        clause += f" AND {quote_identifier(column)} = ?"
    return clause


# =============================================================================
# Training parameters
# =============================================================================


class TrainingParameters(BaseModel):
    """Thresholds that control when the tree stops splitting.

    Immutable for the duration of one build and shared by every node.
    """

    model_config = ConfigDict(frozen=True)

    cv_limit: float = Field(
        default=10.0, description="Stop when the coefficient of variation is below this"
    )
    total_count_limit: int = Field(
        default=1, ge=0, description="Stop when a node has this many rows or fewer"
    )
    cv_decimal_places: int = Field(default=5, ge=0)
    average_decimal_places: int = Field(default=2, ge=0)
    max_depth: int = Field(default=15, ge=0)
    max_features: int = Field(
        default=8, ge=1, description="Number of leading remaining columns considered per split"
    )
    debug_messages: bool = False

    def to_ledger_dict(self) -> dict[str, Any]:
        """Serialize with the key names used by stored run records."""
        return {
            "cv_limit": self.cv_limit,
            "total_count_limit": self.total_count_limit,
            "cv_decimal_places": self.cv_decimal_places,
            "average_decimal_places": self.average_decimal_places,
            "maxDepth": self.max_depth,
            "maxFeatures": self.max_features,
            "debugMessages": self.debug_messages,
        }

    @classmethod
    def from_ledger_dict(cls, data: dict[str, Any]) -> "TrainingParameters":
        """Inverse of ``to_ledger_dict`` (also accepts snake_case keys)."""
        aliases = {
            "maxDepth": "max_depth",
            "maxFeatures": "max_features",
            "debugMessages": "debug_messages",
        }
        return cls.model_validate({aliases.get(k, k): v for k, v in data.items()})


# =============================================================================
# Partition context
# =============================================================================


class PartitionContext(BaseModel):
    """Everything one node evaluation needs to know about its partition.

    A parent creates exactly one context per child before spawning it and
    never touches it afterwards; ``child()`` always returns fresh tuples.
    """

    model_config = ConfigDict(frozen=True)

    table_name: str
    filter_columns: tuple[str, ...] = ()
    filter_bindings: tuple[Any, ...] = ()
    target_column: str
    remaining_columns: tuple[str, ...]
    depth: int = Field(default=0, ge=0)
    training_parameters: TrainingParameters

    @field_validator("remaining_columns")
    @classmethod
    def _unique_columns(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if len(set(value)) != len(value):
            raise ValueError(f"remaining_columns must be unique, got {list(value)}")
        return value

    @model_validator(mode="after")
    def _bindings_match_filter(self) -> "PartitionContext":
        if len(self.filter_columns) != len(self.filter_bindings):
            raise ValueError(
                f"{len(self.filter_columns)} filter columns but "
                f"{len(self.filter_bindings)} bindings"
            )
        return self

    @property
    def filter_predicate(self) -> str:
        return render_filter_predicate(self.filter_columns)

    def child(self, column: str, value: Any) -> "PartitionContext":
        """Derive the context of the partition where ``column = value``."""
        if column not in self.remaining_columns:
            raise ValueError(f"Column {column!r} is not among the remaining columns")
        return PartitionContext(
            table_name=self.table_name,
            filter_columns=self.filter_columns + (column,),
            filter_bindings=self.filter_bindings + (value,),
            target_column=self.target_column,
            remaining_columns=tuple(c for c in self.remaining_columns if c != column),
            depth=self.depth + 1,
            training_parameters=self.training_parameters,
        )

    def describe(self) -> str:
        """Short human-readable path, e.g. 'season=1 > holiday=0'."""
        if not self.filter_columns:
            return "<root>"
        return " > ".join(
            f"{col}={val!r}" for col, val in zip(self.filter_columns, self.filter_bindings)
        )


# =============================================================================
# Provider results
# =============================================================================


class NodeStats(BaseModel):
    """Aggregate statistics of the target column within one partition."""

    mean: float | None = None
    stddev: float | None = None
    count: int = Field(default=0, ge=0)

    @property
    def is_empty(self) -> bool:
        return self.mean is None


class ColumnReduction(BaseModel):
    """Standard deviation reduction obtained by splitting on one column."""

    column: str
    reduction: float


# =============================================================================
# Tree nodes
# =============================================================================


class Leaf(BaseModel):
    """Terminal node."""

    kind: Literal["leaf"] = "leaf"
    prediction: float
    stopped_on: str | None = None
    stop_detail: str | None = None
    where_clause: str | None = None
    where_bindings: list[Any] | None = None


class FailedLeaf(BaseModel):
    """Placeholder for a branch whose statistics could not be obtained."""

    kind: Literal["failed"] = "failed"
    error: str
    stopped_on: Literal["query_failed"] = "query_failed"


class Branch(BaseModel):
    """Internal node splitting on ``split_column``."""

    kind: Literal["branch"] = "branch"
    split_column: str
    coefficient_of_variation: str | None = None
    children: list["ChildEdge"] = Field(default_factory=list)
    where_clause: str | None = None
    where_bindings: list[Any] | None = None


TreeNode = Annotated[Union[Leaf, Branch, FailedLeaf], Field(discriminator="kind")]


class ChildEdge(BaseModel):
    """Edge from a branch to the subtree where ``attribute = value``."""

    attribute: str
    operator: Literal["="] = "="
    value: Any
    subtree: TreeNode


Branch.model_rebuild()
ChildEdge.model_rebuild()


# =============================================================================
# Per-branch outcome
# =============================================================================


@dataclass(frozen=True)
class BranchOutcome:
    """Result reported by one node evaluation to its parent.

    Exactly one of three shapes:
    - ok: ``node`` holds the built subtree
    - pruned: the partition had no rows, contributes no edge
    - failed: ``error`` holds the branch-scoped failure
    """

    status: Literal["ok", "pruned", "failed"]
    node: Leaf | Branch | None = None
    error: BaseException | None = None

    @classmethod
    def ok(cls, node: Leaf | Branch) -> "BranchOutcome":
        return cls(status="ok", node=node)

    @classmethod
    def pruned(cls) -> "BranchOutcome":
        return cls(status="pruned")

    @classmethod
    def failed(cls, error: BaseException) -> "BranchOutcome":
        return cls(status="failed", error=error)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    @property
    def is_pruned(self) -> bool:
        return self.status == "pruned"

    @property
    def is_failed(self) -> bool:
        return self.status == "failed"


# =============================================================================
# Serialization
# =============================================================================


def tree_to_json(node: Leaf | Branch | FailedLeaf, debug_messages: bool = False) -> dict[str, Any]:
    """Serialize a tree into its stored JSON form.

    Debug annotations (nextAttribute, coefficientOfVariation, stopDetail and
    the cumulative where clause) are only emitted with ``debug_messages``.
    """
    if isinstance(node, FailedLeaf):
        return {"failed": True, "stoppedOn": node.stopped_on, "error": node.error}

    data: dict[str, Any] = {}
    if debug_messages and node.where_clause is not None:
        data["cumulative_where_clause"] = node.where_clause
        data["cumulative_where_clause_bindings"] = list(node.where_bindings or [])

    if isinstance(node, Leaf):
        data["prediction"] = node.prediction
        if node.stopped_on:
            data["stoppedOn"] = node.stopped_on
        if debug_messages and node.stop_detail:
            data["stopDetail"] = node.stop_detail
        return data

    if debug_messages:
        data["nextAttribute"] = node.split_column
        if node.coefficient_of_variation is not None:
            data["coefficientOfVariation"] = node.coefficient_of_variation
    children = []
    for edge in node.children:
        child = {
            "selectionCriteriaAttribute": edge.attribute,
            "selectionCriteriaPredicate": edge.operator,
            "selectionCriteriaValue": edge.value,
        }
        child.update(tree_to_json(edge.subtree, debug_messages=debug_messages))
        children.append(child)
    data["children"] = children
    return data


def tree_from_json(data: dict[str, Any]) -> Leaf | Branch | FailedLeaf:
    """Parse the stored JSON form back into tree nodes.

    Accepts predictions stored as strings (older models kept the fixed-point
    text of the mean).
    """
    if not isinstance(data, dict):
        raise ValueError(f"Tree node must be an object, got {type(data).__name__}")

    if data.get("failed"):
        return FailedLeaf(error=str(data.get("error", "")))

    if "children" in data:
        edges = []
        for child in data["children"]:
            edges.append(
                ChildEdge(
                    attribute=child["selectionCriteriaAttribute"],
                    operator=child.get("selectionCriteriaPredicate", "="),
                    value=child.get("selectionCriteriaValue"),
                    subtree=tree_from_json(child),
                )
            )
        split_column = data.get("nextAttribute")
        if split_column is None:
            split_column = edges[0].attribute if edges else ""
        return Branch(
            split_column=split_column,
            coefficient_of_variation=data.get("coefficientOfVariation"),
            children=edges,
            where_clause=data.get("cumulative_where_clause"),
            where_bindings=data.get("cumulative_where_clause_bindings"),
        )

    if "prediction" in data:
        prediction = float(data["prediction"])
        if math.isnan(prediction):
            raise ValueError("Leaf prediction is NaN")
        return Leaf(
            prediction=prediction,
            stopped_on=data.get("stoppedOn") or data.get("stopped_on"),
            stop_detail=data.get("stopDetail"),
            where_clause=data.get("cumulative_where_clause"),
            where_bindings=data.get("cumulative_where_clause_bindings"),
        )

    raise ValueError(f"Unrecognized tree node with keys {sorted(data)}")
