"""Build command for growing a tree from a table."""

import json
import logging
import time
from pathlib import Path
from threading import Event, Thread

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.spinner import Spinner
from rich.text import Text

from ..app import app, console, get_json_mode
from ..utils import ExitCode, Output, format_elapsed, render_tree
from ...config import get_config
from ...core.models import BuildRequest, BuildResult, TrainingParameters
from ...core.rate_limiter import QueryLimiter
from ...core.providers import get_provider
from ...storage import open_run_db
from ...tree import TreeBuilder, count_nodes, tree_depth


def _build_progress_display(snap: dict, elapsed: float) -> Text:
    """Build a Rich Text renderable showing live build progress.

    Args:
        snap: Snapshot dict from BuildProgress.snapshot()
        elapsed: Elapsed seconds since build start

    Returns:
        Rich Text object for Live display
    """
    text = Text()
    header = (
        f"Nodes {snap.get('nodes_finished', 0)}/{snap.get('nodes_started', 0)} | "
        f"depth {snap.get('max_depth_seen', 0)} | "
        f"{snap.get('queries', 0)} queries | "
        f"{format_elapsed(elapsed)}"
    )
    text.append(header, style="cyan bold")
    text.append(
        f"\n  branches {snap.get('branches', 0)}  leaves {snap.get('leaves', 0)}  "
        f"pruned {snap.get('pruned', 0)}  failed {snap.get('failed', 0)}  "
        f"retries {snap.get('retries', 0)}"
    )
    return text


def setup_logging(verbose: bool = False, debug: bool = False):
    """Configure logging for builds.

    In JSON mode log records go to stderr so stdout stays parseable.
    """
    level = logging.WARNING
    if verbose:
        level = logging.INFO
    if debug:
        level = logging.DEBUG

    log_console = Console(stderr=True) if get_json_mode() else console

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=log_console, show_path=False, markup=False)],
        force=True,
    )

    for name in ["vartree.tree", "vartree.core"]:
        logging.getLogger(name).setLevel(level)


def _load_request(
    spec: Path | None,
    table: str | None,
    target: str | None,
    columns: str | None,
) -> BuildRequest:
    """Build request from a YAML spec or from --table/--target/--columns."""
    config = get_config()
    if spec is not None:
        if not spec.exists():
            raise FileNotFoundError(f"Build spec not found: {spec}")
        request = BuildRequest.from_yaml(
            spec, training_defaults=config.training_parameters()
        )
        updates = {}
        if table:
            updates["table_name"] = table
        if target:
            updates["target_column"] = target
        if columns:
            updates["columns"] = [c.strip() for c in columns.split(",") if c.strip()]
        if updates:
            request = BuildRequest.model_validate({**request.model_dump(), **updates})
        return request

    if not table or not target or not columns:
        raise ValueError("Provide --spec, or all of --table, --target and --columns")
    return BuildRequest(
        table_name=table,
        target_column=target,
        columns=[c.strip() for c in columns.split(",") if c.strip()],
        training=config.training_parameters(),
    )


@app.command("build")
def build_command(
    spec: Path | None = typer.Option(None, "--spec", "-s", help="Build spec YAML file"),
    table: str | None = typer.Option(None, "--table", "-t", help="Training table"),
    target: str | None = typer.Option(None, "--target", help="Target column to predict"),
    columns: str | None = typer.Option(
        None, "--columns", "-c", help="Comma-separated split columns, in priority order"
    ),
    database: str | None = typer.Option(
        None, "--database", "-d", help="SQLite database (default: from config)"
    ),
    ledger: Path | None = typer.Option(
        None, "--ledger", help="Run ledger database (default: from config)"
    ),
    cv_limit: float | None = typer.Option(None, "--cv-limit", help="CoV stop threshold"),
    total_count_limit: int | None = typer.Option(
        None, "--total-count-limit", help="Stop at this many rows or fewer"
    ),
    max_depth: int | None = typer.Option(None, "--max-depth", help="Maximum tree depth"),
    max_features: int | None = typer.Option(
        None, "--max-features", help="Leading columns considered per split"
    ),
    debug_messages: bool | None = typer.Option(
        None,
        "--debug-messages/--no-debug-messages",
        help="Store debug annotations (where clause, CoV, stop detail) in the model",
    ),
    max_concurrent: int | None = typer.Option(
        None, "--max-concurrent", help="Statistics queries in flight at once"
    ),
    max_pending_nodes: int | None = typer.Option(
        None, "--max-pending-nodes", help="Node evaluations doing their own work at once"
    ),
    timeout: float | None = typer.Option(None, "--timeout", help="Per-query timeout (s)"),
    retries: int | None = typer.Option(None, "--retries", help="Attempts per query"),
    log_queries: bool = typer.Option(
        False, "--log-queries", help="Write a JSON record per query under ./logs"
    ),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Also write the model JSON to this file"
    ),
    show_tree: bool = typer.Option(False, "--show-tree", help="Print the tree when done"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress progress output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show INFO logs"),
    debug: bool = typer.Option(False, "--debug", help="Show DEBUG logs"),
):
    """Build a regression tree and record it in the run ledger.

    Examples:
        vartree build --spec bikes.yaml -d data/bikes.sqlite
        vartree build -t bikes_hours -c season,holiday,weathersit --target cnt --max-depth 4
    """
    out = Output(console=console, json_mode=get_json_mode())
    setup_logging(verbose=verbose, debug=debug)
    config = get_config()

    try:
        request = _load_request(spec, table, target, columns)
        overrides = {
            "cv_limit": cv_limit,
            "total_count_limit": total_count_limit,
            "max_depth": max_depth,
            "max_features": max_features,
            "debug_messages": debug_messages,
        }
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if overrides:
            training = TrainingParameters.model_validate(
                {**request.training.model_dump(), **overrides}
            )
            request = request.model_copy(update={"training": training})
    except FileNotFoundError as e:
        out.error(str(e), exit_code=ExitCode.FILE_NOT_FOUND)
        raise typer.Exit(out.finish())
    except (ValidationError, ValueError) as e:
        out.error(f"Invalid build request: {e}")
        raise typer.Exit(out.finish())

    provider_name = config.defaults.provider
    if provider_name != "sqlite":
        out.error(
            f"Provider {provider_name!r} cannot be used from the CLI",
            suggestion="vartree config set defaults.provider sqlite",
        )
        raise typer.Exit(out.finish())

    db_path = database or config.defaults.database
    try:
        provider = get_provider(provider_name, database=db_path, log_queries=log_queries)
    except FileNotFoundError as e:
        out.error(str(e), exit_code=ExitCode.FILE_NOT_FOUND)
        raise typer.Exit(out.finish())

    ledger_path = ledger or config.ledger_path_resolved
    run_db = open_run_db(ledger_path)

    limiter = QueryLimiter.for_provider(
        provider_name,
        max_concurrent=max_concurrent or config.build.max_concurrent,
        qpm_override=config.build.qpm_override,
    )
    builder = TreeBuilder(
        provider,
        ledger=run_db,
        limiter=limiter,
        max_pending_nodes=max_pending_nodes or config.build.max_pending_nodes,
        query_timeout=timeout or config.build.query_timeout,
        max_retries=retries or config.build.max_retries,
        retry_base_delay=config.build.retry_base_delay,
        retry_max_delay=config.build.retry_max_delay,
        close_provider=True,
    )
    show_progress = not quiet and not get_json_mode()
    if show_progress:
        console.print(
            f"Building tree on [bold]{request.table_name}[/bold] "
            f"(target [bold]{request.target_column}[/bold], {len(request.columns)} columns)"
        )

    result: BuildResult | None = None
    build_error: BaseException | None = None
    build_done = Event()
    start_time = time.time()

    def do_build():
        nonlocal result, build_error
        try:
            result = builder.build_sync(request)
        except Exception as e:
            build_error = e
        finally:
            build_done.set()

    build_thread = Thread(target=do_build, daemon=True)
    build_thread.start()

    try:
        if show_progress:
            with Live(
                Spinner("dots", text="Starting...", style="cyan"),
                console=console,
                refresh_per_second=4,
                transient=True,
            ) as live:
                while not build_done.is_set():
                    elapsed = time.time() - start_time
                    live.update(_build_progress_display(builder.progress.snapshot(), elapsed))
                    time.sleep(0.25)
        else:
            build_done.wait()
    except KeyboardInterrupt:
        builder.token.cancel("interrupted by user")
        build_done.wait()
    finally:
        build_thread.join()
        run_db.close()

    if build_error is not None:
        out.error(f"Build crashed: {build_error}", exit_code=ExitCode.BUILD_FAILED)
        raise typer.Exit(out.finish())

    elapsed = time.time() - start_time
    out.set_data("run_id", result.run_id)
    out.set_data("build_status", result.status)
    out.set_data("stats", result.stats)
    out.set_data("elapsed_seconds", result.elapsed_seconds)

    if result.status == "cancelled":
        out.error(f"Build cancelled: {result.error}", exit_code=ExitCode.USER_CANCELLED)
        raise typer.Exit(out.finish())
    if not result.succeeded:
        out.error(f"Build failed: {result.error}", exit_code=ExitCode.BUILD_FAILED)
        raise typer.Exit(out.finish())

    model = result.to_json()
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, "w") as f:
            json.dump(model, f, indent=2)
        out.set_data("output", str(output))

    counts = count_nodes(result.tree)
    out.success(
        f"Built run [bold]{result.run_id}[/bold] in {format_elapsed(elapsed)}",
        depth=tree_depth(result.tree),
        **counts,
    )
    out.text(
        f"  depth {tree_depth(result.tree)}, {counts['branches']} branches, "
        f"{counts['leaves']} leaves, {counts['failed']} failed, "
        f"{result.stats.get('queries', 0)} queries"
    )
    if counts["failed"]:
        out.warning(
            f"{counts['failed']} branch(es) failed after {builder.runner.max_retries} "
            f"attempts and predict nothing",
            suggestion="rerun with --retries or --timeout raised, or check the database",
        )
    if output is not None:
        out.text(f"  Model written to [bold]{output}[/bold]")
    if show_tree and not get_json_mode():
        console.print(render_tree(result.tree, title=request.table_name))

    raise typer.Exit(out.finish())
