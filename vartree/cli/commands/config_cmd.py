"""Config command for viewing and managing vartree configuration."""

from dataclasses import fields

import typer

from ..app import app, console
from ... import config as config_module
from ...config import BuildConfig, DefaultsConfig, TrainingConfig, get_config, reset_config


VALID_KEYS = {
    f"{section}.{f.name}"
    for section, cls in (
        ("training", TrainingConfig),
        ("build", BuildConfig),
        ("defaults", DefaultsConfig),
    )
    for f in fields(cls)
}


@app.command("config")
def config_command(
    action: str = typer.Argument(
        ...,
        help="Action: show, set, reset",
    ),
    key: str | None = typer.Argument(
        None,
        help="Config key (e.g. build.max_concurrent, training.max_depth)",
    ),
    value: str | None = typer.Argument(
        None,
        help="Value to set",
    ),
):
    """View or modify vartree configuration.

    Examples:
        vartree config show
        vartree config set training.max_depth 8
        vartree config set build.max_concurrent 16
        vartree config reset
    """
    if action == "show":
        _show_config()
    elif action == "set":
        if not key or value is None:
            console.print("[red]Usage:[/red] vartree config set <key> <value>")
            console.print()
            console.print("Available keys:")
            for k in sorted(VALID_KEYS):
                console.print(f"  {k}")
            raise typer.Exit(1)
        _set_config(key, value)
    elif action == "reset":
        _reset_config()
    else:
        console.print(f"[red]Unknown action:[/red] {action}")
        console.print("Valid actions: show, set, reset")
        raise typer.Exit(1)


def _show_config():
    """Display current resolved configuration."""
    config = get_config()

    console.print()
    console.print("[bold]vartree Configuration[/bold]")
    console.print("─" * 40)

    for title, section in config.to_dict().items():
        console.print()
        console.print(f"[bold cyan]{title.capitalize()}[/bold cyan]")
        width = max(len(k) for k in section)
        for k, v in section.items():
            shown = "[dim](none)[/dim]" if v is None else v
            console.print(f"  {k:<{width}} = {shown}")

    console.print()
    config_file = config_module.CONFIG_FILE
    if config_file.exists():
        console.print(f"Config file: {config_file}")
    else:
        console.print(f"Config file: [dim]not created yet[/dim] ({config_file})")
    console.print()


def _set_config(key: str, value: str):
    """Set a config value and save."""
    if key not in VALID_KEYS:
        console.print(f"[red]Unknown key:[/red] {key}")
        console.print()
        console.print("Available keys:")
        for k in sorted(VALID_KEYS):
            console.print(f"  {k}")
        raise typer.Exit(1)

    config = get_config()
    try:
        config.set_value(key, value)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    config.save()
    reset_config()  # Clear cached singleton so next get_config() reloads

    console.print(f"[green]✓[/green] Set {key} = {value}")
    console.print(f"  Saved to {config_module.CONFIG_FILE}")


def _reset_config():
    """Reset config to defaults."""
    config_file = config_module.CONFIG_FILE
    if config_file.exists():
        config_file.unlink()
        reset_config()
        console.print("[green]✓[/green] Config reset to defaults")
        console.print(f"  Removed {config_file}")
    else:
        console.print("Config already at defaults (no config file exists)")
