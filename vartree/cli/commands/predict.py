"""Predict command for scoring rows with a stored model."""

import json
from pathlib import Path

import typer

from ..app import app, console, get_json_mode
from ..utils import ExitCode, Output
from ...config import get_config
from ...core.models import tree_from_json
from ...storage import open_run_db
from ...tree import predict_rows


@app.command("predict")
def predict_command(
    run_id: str = typer.Argument(..., help="Completed run whose model to use"),
    row: list[str] = typer.Option(
        None, "--row", "-r", help='Row as a JSON object, e.g. \'{"season": 1}\' (repeatable)'
    ),
    rows_file: Path | None = typer.Option(
        None, "--rows", help="JSON file holding a list of row objects"
    ),
    ledger: Path | None = typer.Option(
        None, "--ledger", help="Run ledger database (default: from config)"
    ),
):
    """Predict the target for one or more rows.

    Examples:
        vartree predict run_20250101_120000_abcd1234 --row '{"season": 1, "holiday": 0}'
        vartree predict run_20250101_120000_abcd1234 --rows rows.json
    """
    out = Output(console=console, json_mode=get_json_mode())

    rows: list[dict] = []
    try:
        for raw in row or []:
            rows.append(json.loads(raw))
        if rows_file is not None:
            with open(rows_file) as f:
                rows.extend(json.load(f))
    except FileNotFoundError as e:
        out.error(f"Rows file not found: {e.filename}", exit_code=ExitCode.FILE_NOT_FOUND)
        raise typer.Exit(out.finish())
    except json.JSONDecodeError as e:
        out.error(f"Invalid JSON row: {e}")
        raise typer.Exit(out.finish())

    if not rows or not all(isinstance(r, dict) for r in rows):
        out.error("Provide at least one row object with --row or --rows")
        raise typer.Exit(out.finish())

    ledger_path = ledger or Path(get_config().defaults.ledger_path)
    if not ledger_path.exists():
        out.error(f"Run ledger not found: {ledger_path}", exit_code=ExitCode.FILE_NOT_FOUND)
        raise typer.Exit(out.finish())

    with open_run_db(ledger_path) as db:
        model = db.get_model(run_id)
    if model is None:
        out.error(f"No completed model for run {run_id}", exit_code=ExitCode.RUN_NOT_FOUND)
        raise typer.Exit(out.finish())

    predictions = predict_rows(tree_from_json(model), rows)
    out.set_data("predictions", predictions)
    for r, prediction in zip(rows, predictions):
        shown = "[dim]no prediction[/dim]" if prediction is None else f"[green]{prediction}[/green]"
        out.text(f"{json.dumps(r)} → {shown}")

    raise typer.Exit(out.finish())
