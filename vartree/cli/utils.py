"""CLI utilities for dual-mode output (human-friendly + machine-readable).

This module provides utilities for CLI commands to support both:
- Human mode (default): Rich formatting with colors, tables, trees
- Machine mode (--json): Structured JSON output for scripts

Example:
    from ..cli.utils import Output, ExitCode

    @app.command()
    def my_command():
        out = Output(console=console, json_mode=get_json_mode())
        out.success("Built tree", run_id="run_...", leaves=42)
        out.table("Runs", ["Run", "Status"], [["run_...", "completed"]])
        return out.finish()
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, PrivateAttr
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from ..core.models import Branch, FailedLeaf, Leaf


class ExitCode:
    """Standardized exit codes for CLI commands.

    Scripts can check $? and know exactly what failed:
        0 = Success
        1 = Validation error (fix the build spec or arguments)
        2 = Build failed (the run is recorded as failed)
        3 = File not found
        4 = Run not found in the ledger
        10 = Build cancelled
    """

    SUCCESS = 0
    VALIDATION_ERROR = 1
    BUILD_FAILED = 2
    FILE_NOT_FOUND = 3
    RUN_NOT_FOUND = 4
    USER_CANCELLED = 10


class Output(BaseModel):
    """Dual-mode output handler for CLI commands.

    In human mode: Uses Rich for pretty terminal output.
    In JSON mode: Collects structured data and outputs JSON at the end.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    console: Console
    json_mode: bool = False

    _data: dict[str, Any] = PrivateAttr()
    _exit_code: int = PrivateAttr(default=ExitCode.SUCCESS)

    def model_post_init(self, __context: Any) -> None:
        self._data = {
            "status": "success",
            "warnings": [],
            "errors": [],
        }

    def success(self, message: str, **data: Any) -> None:
        """Output a success message with optional data."""
        if self.json_mode:
            self._data.update(data)
        else:
            self.console.print(f"[green]✓[/green] {message}")

    def warning(self, message: str, *, suggestion: str | None = None) -> None:
        """Output a warning message."""
        if self.json_mode:
            warning_obj: dict[str, Any] = {"message": message}
            if suggestion:
                warning_obj["suggestion"] = suggestion
            self._data["warnings"].append(warning_obj)
        else:
            self.console.print(f"[yellow]⚠[/yellow] {message}")
            if suggestion:
                self.console.print(f"  [dim]→ {suggestion}[/dim]")

    def error(
        self,
        message: str,
        *,
        suggestion: str | None = None,
        exit_code: int = ExitCode.VALIDATION_ERROR,
    ) -> None:
        """Output an error message and set exit code."""
        self._exit_code = exit_code
        self._data["status"] = "error"

        if self.json_mode:
            error_obj: dict[str, Any] = {"message": message}
            if suggestion:
                error_obj["suggestion"] = suggestion
            self._data["errors"].append(error_obj)
        else:
            self.console.print(f"[red]✗[/red] {message}")
            if suggestion:
                self.console.print(f"  [dim]→ {suggestion}[/dim]")

    def text(self, message: str) -> None:
        """Output plain text (human mode only)."""
        if not self.json_mode:
            self.console.print(message)

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        *,
        data_key: str | None = None,
    ) -> None:
        """Output a formatted table.

        Args:
            title: Table title
            columns: Column headers
            rows: Table rows (list of lists)
            data_key: Key to use in JSON output (defaults to snake_case of title)
        """
        key = data_key or title.lower().replace(" ", "_")

        if self.json_mode:
            self._data[key] = [dict(zip(columns, row)) for row in rows]
        else:
            table = Table(title=title, show_header=True, header_style="bold")
            for col in columns:
                table.add_column(col)
            for row in rows:
                table.add_row(*row)
            self.console.print(table)

    def set_data(self, key: str, value: Any) -> None:
        """Set arbitrary data in JSON output."""
        self._data[key] = value

    def finish(self) -> int:
        """Finalize output and return exit code.

        In JSON mode, prints the accumulated data as JSON to stdout.
        """
        if self.json_mode:
            self._data["exit_code"] = self._exit_code
            print(json.dumps(self._data, indent=2, default=str))

        return self._exit_code


def format_elapsed(seconds: float) -> str:
    """Format elapsed seconds as Xm Ys or Xs."""
    if seconds >= 60:
        mins = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{mins}m {secs}s"
    return f"{seconds:.0f}s"


def _node_label(node: Leaf | Branch | FailedLeaf) -> str:
    if isinstance(node, Leaf):
        stop = f" [dim]({node.stopped_on})[/dim]" if node.stopped_on else ""
        return f"[green]{node.prediction}[/green]{stop}"
    if isinstance(node, FailedLeaf):
        return f"[red]failed[/red] [dim]{node.error}[/dim]"
    cv = f" [dim]cv={node.coefficient_of_variation}[/dim]" if node.coefficient_of_variation else ""
    return f"[bold]{node.split_column}[/bold]{cv}"


def render_tree(
    node: Leaf | Branch | FailedLeaf,
    max_depth: int | None = None,
    title: str = "model",
) -> Tree:
    """Build a Rich Tree renderable of a decision tree.

    Args:
        node: Root node
        max_depth: Stop expanding below this many levels (None = all)
        title: Label of the root line
    """
    root = Tree(f"[cyan]{title}[/cyan]: {_node_label(node)}")

    def _add(parent: Tree, branch: Leaf | Branch | FailedLeaf, depth: int) -> None:
        if not isinstance(branch, Branch):
            return
        if max_depth is not None and depth >= max_depth:
            if branch.children:
                parent.add(f"[dim]... {len(branch.children)} more[/dim]")
            return
        for edge in branch.children:
            child = parent.add(f"{edge.attribute} {edge.operator} {edge.value!r} → {_node_label(edge.subtree)}")
            _add(child, edge.subtree, depth + 1)

    _add(root, node, 0)
    return root
