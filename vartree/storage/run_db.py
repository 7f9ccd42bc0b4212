"""Run ledger storage for vartree.

One row per tree build in ``model_runs``: the table and target it was
trained on, the training parameters, start/end timestamps, final status and
the serialized model. ``run_metadata`` holds per-run JSON extras such as the
progress snapshot and query limiter statistics.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from ..core.models import TrainingParameters
from .schemas import RunRecord, RunSummary

TERMINAL_STATUSES = {"completed", "failed", "cancelled"}


def _now_iso() -> str:
    return datetime.now().isoformat()


def _dumps(data: Any) -> str:
    return json.dumps(data, default=str)


def _new_run_id() -> str:
    return f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


class RunDB:
    """SQLite-backed run ledger."""

    def __init__(self, path: Path | str):
        self.path = Path(path) if str(path) != ":memory:" else None
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._set_pragmas()
        self.init_schema()

    def _set_pragmas(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        if self.path is not None:
            cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = NORMAL")
        self.conn.commit()

    def init_schema(self) -> None:
        """Create ledger schema and indexes."""
        cursor = self.conn.cursor()
        cursor.executescript(
            """
            CREATE TABLE IF NOT EXISTS model_runs (
                run_id TEXT PRIMARY KEY,
                table_name TEXT NOT NULL,
                target_column TEXT,
                algorithm TEXT NOT NULL,
                status TEXT NOT NULL,
                training_parameters_json TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                model_json TEXT,
                error TEXT
            );

            CREATE TABLE IF NOT EXISTS run_metadata (
                run_id TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT,
                PRIMARY KEY (run_id, key),
                FOREIGN KEY (run_id) REFERENCES model_runs(run_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_model_runs_table ON model_runs(table_name, started_at);
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "RunDB":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    # -------------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------------

    def create_run(
        self,
        table_name: str,
        target_column: str | None,
        algorithm: str,
        run_id: str | None = None,
    ) -> str:
        """Insert a new run in ``running`` state and return its id."""
        run_id = run_id or _new_run_id()
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO model_runs
            (run_id, table_name, target_column, algorithm, status, started_at)
            VALUES (?, ?, ?, ?, 'running', ?)
            """,
            (run_id, table_name, target_column, algorithm, _now_iso()),
        )
        self.conn.commit()
        return run_id

    def record_training_parameters(
        self, run_id: str, params: TrainingParameters | dict[str, Any]
    ) -> None:
        data = params.to_ledger_dict() if isinstance(params, TrainingParameters) else params
        self._update(run_id, "training_parameters_json = ?", (_dumps(data),))

    def finalize_run(self, run_id: str, model: dict[str, Any]) -> None:
        """Store the serialized tree and mark the run completed."""
        self._update(
            run_id,
            "status = 'completed', completed_at = ?, model_json = ?, error = NULL",
            (_now_iso(), _dumps(model)),
        )

    def fail_run(self, run_id: str, status: str = "failed", error: str | None = None) -> None:
        """Mark a run failed or cancelled, keeping the diagnostic."""
        if status not in TERMINAL_STATUSES - {"completed"}:
            raise ValueError(f"Invalid failure status: {status!r}")
        self._update(
            run_id,
            "status = ?, completed_at = ?, error = ?",
            (status, _now_iso(), error),
        )

    def _update(self, run_id: str, assignments: str, params: tuple[Any, ...]) -> None:
        cursor = self.conn.cursor()
        cursor.execute(
            f"UPDATE model_runs SET {assignments} WHERE run_id = ?",
            (*params, run_id),
        )
        if cursor.rowcount == 0:
            self.conn.rollback()
            raise KeyError(f"Unknown run: {run_id}")
        self.conn.commit()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_run(self, run_id: str) -> RunRecord | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM model_runs WHERE run_id = ?", (run_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return RunRecord(
            run_id=row["run_id"],
            table_name=row["table_name"],
            target_column=row["target_column"],
            algorithm=row["algorithm"],
            status=row["status"],
            training_parameters=json.loads(row["training_parameters_json"] or "{}"),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            model=json.loads(row["model_json"]) if row["model_json"] else None,
            error=row["error"],
        )

    def get_model(self, run_id: str) -> dict[str, Any] | None:
        """Serialized tree of a completed run."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT model_json FROM model_runs WHERE run_id = ? AND status = 'completed'",
            (run_id,),
        )
        row = cursor.fetchone()
        if row is None or not row["model_json"]:
            return None
        return json.loads(row["model_json"])

    def list_runs(
        self,
        table_name: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[RunSummary]:
        """Runs, newest first."""
        sql = (
            "SELECT run_id, table_name, target_column, algorithm, status, started_at, "
            "completed_at FROM model_runs WHERE 1=1"
        )
        params: list[Any] = []
        if table_name:
            sql += " AND table_name = ?"
            params.append(table_name)
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY started_at DESC, run_id DESC"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"

        cursor = self.conn.cursor()
        cursor.execute(sql, params)
        return [RunSummary(**dict(row)) for row in cursor.fetchall()]

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    def set_run_metadata(self, run_id: str, key: str, value: Any) -> None:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT OR REPLACE INTO run_metadata (run_id, key, value)
            VALUES (?, ?, ?)
            """,
            (run_id, key, _dumps(value)),
        )
        self.conn.commit()

    def get_run_metadata(self, run_id: str, key: str) -> Any:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT value FROM run_metadata WHERE run_id = ? AND key = ?",
            (run_id, key),
        )
        row = cursor.fetchone()
        return json.loads(row["value"]) if row and row["value"] is not None else None


def open_run_db(path: Path | str) -> RunDB:
    """Open the run ledger and ensure the schema exists."""
    return RunDB(path)
