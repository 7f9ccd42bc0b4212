"""Runs command for listing and inspecting ledger runs."""

import json
from pathlib import Path

import typer

from ..app import app, console, get_json_mode
from ..utils import ExitCode, Output, render_tree
from ...config import get_config
from ...core.models import tree_from_json
from ...storage import open_run_db
from ...tree import count_nodes, tree_depth


@app.command("runs")
def runs_command(
    run_id: str | None = typer.Argument(None, help="Run to show (omit to list runs)"),
    ledger: Path | None = typer.Option(
        None, "--ledger", help="Run ledger database (default: from config)"
    ),
    table: str | None = typer.Option(None, "--table", "-t", help="Only runs on this table"),
    status: str | None = typer.Option(None, "--status", help="Only runs with this status"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum runs to list"),
    export: Path | None = typer.Option(
        None, "--export", "-e", help="Write the run's model JSON to this file"
    ),
    show_tree: bool = typer.Option(False, "--tree", help="Print the model tree"),
    tree_depth_limit: int | None = typer.Option(
        None, "--tree-depth", help="Levels of the tree to print"
    ),
):
    """List runs in the ledger, or show one run.

    Examples:
        vartree runs
        vartree runs run_20250101_120000_abcd1234 --tree --tree-depth 2
        vartree runs run_20250101_120000_abcd1234 --export model.json
    """
    out = Output(console=console, json_mode=get_json_mode())
    ledger_path = ledger or Path(get_config().defaults.ledger_path)
    if not ledger_path.exists():
        out.error(f"Run ledger not found: {ledger_path}", exit_code=ExitCode.FILE_NOT_FOUND)
        raise typer.Exit(out.finish())

    with open_run_db(ledger_path) as db:
        if run_id is None:
            summaries = db.list_runs(table_name=table, status=status, limit=limit)
            out.table(
                "Runs",
                ["Run", "Table", "Target", "Status", "Started"],
                [
                    [
                        s.run_id,
                        s.table_name,
                        s.target_column or "",
                        s.status,
                        s.started_at[:19],
                    ]
                    for s in summaries
                ],
            )
            if not summaries:
                out.text("[dim]No runs recorded yet[/dim]")
            raise typer.Exit(out.finish())

        record = db.get_run(run_id)
        if record is None:
            out.error(f"Run not found: {run_id}", exit_code=ExitCode.RUN_NOT_FOUND)
            raise typer.Exit(out.finish())
        progress = db.get_run_metadata(run_id, "progress")

    out.set_data("run", record.model_dump(exclude={"model"}))
    if progress:
        out.set_data("progress", progress)

    out.text(f"[bold]{record.run_id}[/bold]  {record.algorithm}  [cyan]{record.status}[/cyan]")
    out.text(f"  table   {record.table_name} → {record.target_column}")
    out.text(f"  started {record.started_at}")
    if record.completed_at:
        out.text(f"  ended   {record.completed_at}")
    if record.training_parameters:
        params = ", ".join(f"{k}={v}" for k, v in record.training_parameters.items())
        out.text(f"  params  {params}")
    if record.error:
        out.text(f"  [red]error[/red]   {record.error}")

    if record.model is not None:
        tree = tree_from_json(record.model)
        counts = count_nodes(tree)
        out.set_data("model_summary", {"depth": tree_depth(tree), **counts})
        out.text(
            f"  model   depth {tree_depth(tree)}, {counts['branches']} branches, "
            f"{counts['leaves']} leaves, {counts['failed']} failed"
        )
        if show_tree and not get_json_mode():
            console.print(render_tree(tree, max_depth=tree_depth_limit, title=record.table_name))

    if export is not None:
        if record.model is None:
            out.error(f"Run {run_id} has no model ({record.status})", exit_code=ExitCode.RUN_NOT_FOUND)
            raise typer.Exit(out.finish())
        export.parent.mkdir(parents=True, exist_ok=True)
        with open(export, "w") as f:
            json.dump(record.model, f, indent=2)
        out.success(f"Exported model to {export}", export=str(export))

    raise typer.Exit(out.finish())
