"""Pydantic schemas for run ledger records."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

RunStatus = Literal["running", "completed", "failed", "cancelled"]


class RunRecord(BaseModel):
    """Validated representation of a row in ``model_runs``."""

    run_id: str
    table_name: str
    target_column: str | None = None
    algorithm: str
    status: RunStatus
    training_parameters: dict[str, Any] = Field(default_factory=dict)
    started_at: str
    completed_at: str | None = None
    model: dict[str, Any] | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.status != "running"


class RunSummary(BaseModel):
    """Listing entry for a run (no model payload)."""

    run_id: str
    table_name: str
    target_column: str | None = None
    algorithm: str
    status: RunStatus
    started_at: str
    completed_at: str | None = None
