"""Storage layer for the run ledger."""

from .run_db import RunDB, open_run_db
from .schemas import RunRecord, RunStatus, RunSummary

__all__ = [
    "RunDB",
    "open_run_db",
    "RunRecord",
    "RunStatus",
    "RunSummary",
]
