"""Build request and result models."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .tree import (
    PartitionContext,
    TrainingParameters,
    TreeNode,
    is_valid_identifier,
    tree_to_json,
)


class BuildRequest(BaseModel):
    """What to train: a table, its target column and the candidate split columns.

    Example YAML:
        table_name: bikes_hours_eng
        target_column: CNT
        columns: [holiday, weekday, workingday, weathersit, temp, atemp, hum]
        training:
          max_depth: 6
          cv_limit: 10
    """

    table_name: str = Field(description="Table holding the training rows")
    target_column: str = Field(description="Numeric column to predict")
    columns: list[str] = Field(
        default_factory=list, description="Candidate split columns, in priority order"
    )
    training: TrainingParameters = Field(default_factory=TrainingParameters)
    name: str | None = Field(default=None, description="Optional label for the run")

    @field_validator("table_name", "target_column")
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        if not is_valid_identifier(value):
            raise ValueError(f"{value!r} is not a valid SQL identifier")
        return value

    @field_validator("columns")
    @classmethod
    def _check_columns(cls, value: list[str]) -> list[str]:
        bad = [c for c in value if not is_valid_identifier(c)]
        if bad:
            raise ValueError(f"Invalid column identifiers: {bad}")
        seen: set[str] = set()
        dupes = []
        for column in value:
            if column in seen:
                dupes.append(column)
            seen.add(column)
        if dupes:
            raise ValueError(f"Duplicate columns: {dupes}")
        return value

    @model_validator(mode="after")
    def _target_not_a_feature(self) -> "BuildRequest":
        if self.target_column in self.columns:
            raise ValueError(
                f"Target column {self.target_column!r} cannot also be a split column"
            )
        return self

    def root_context(self) -> PartitionContext:
        """Context of the root node: whole table, all columns, depth 0."""
        return PartitionContext(
            table_name=self.table_name,
            target_column=self.target_column,
            remaining_columns=tuple(self.columns),
            depth=0,
            training_parameters=self.training,
        )

    def to_yaml(self, path: Path | str) -> None:
        """Save build request to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json", exclude_none=True)

        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    @classmethod
    def from_yaml(
        cls, path: Path | str, training_defaults: TrainingParameters | None = None
    ) -> "BuildRequest":
        """Load build request from YAML file.

        Training keys the file leaves out (or a missing ``training`` block)
        fall back to ``training_defaults`` when given, else the built-in defaults.
        """
        path = Path(path)

        with open(path) as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError("Build spec YAML must parse to an object")

        # Older specs use short keys (table, target) and comma-separated columns
        if "table" in data and "table_name" not in data:
            data["table_name"] = data.pop("table")
        if "target" in data and "target_column" not in data:
            data["target_column"] = data.pop("target")
        if isinstance(data.get("columns"), str):
            data["columns"] = [c.strip() for c in data["columns"].split(",") if c.strip()]

        base = training_defaults.model_dump() if training_defaults is not None else {}
        training = data.get("training")
        if training is None:
            data["training"] = TrainingParameters.model_validate(base)
        elif isinstance(training, dict):
            overlay = TrainingParameters.from_ledger_dict(training).model_dump(
                exclude_unset=True
            )
            data["training"] = TrainingParameters.model_validate({**base, **overlay})

        return cls.model_validate(data)


class BuildResult(BaseModel):
    """Outcome of one tree build."""

    run_id: str | None = None
    status: Literal["completed", "failed", "cancelled"] = "completed"
    tree: TreeNode | None = None
    error: str | None = None
    debug_messages: bool = False
    stats: dict[str, Any] = Field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and self.tree is not None

    def to_json(self) -> dict[str, Any] | None:
        """Serialized model tree, or None if the build produced no tree."""
        if self.tree is None:
            return None
        return tree_to_json(self.tree, debug_messages=self.debug_messages)
