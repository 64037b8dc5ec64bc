"""
CLI: ``query-spine config`` — configuration inspection.
"""

from __future__ import annotations

import typer
from pydantic import ValidationError
from rich.table import Table

from queryspine.cli.utils import console, err_console

app = typer.Typer(no_args_is_help=True)


@app.command("show")
def show_config(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, env"),
) -> None:
    """Show effective settings (defaults overridden by QUERYSPINE_* variables)."""
    from queryspine.core.settings import get_settings

    settings = get_settings()

    if format == "json":
        console.print_json(settings.model_dump_json())
        return

    if format == "env":
        for key, value in sorted(settings.model_dump().items()):
            typer.echo(f"QUERYSPINE_{key.upper()}={'' if value is None else value}")
        return

    table = Table()
    table.add_column("Setting")
    table.add_column("Value")
    for key, value in settings.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command("validate")
def validate_config() -> None:
    """Validate settings from the environment."""
    from queryspine.core.settings import clear_settings_cache, get_settings

    clear_settings_cache()
    try:
        settings = get_settings()
    except ValidationError as e:
        err_console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print("[green]✓ Configuration is valid[/green]")
    console.print(
        f"  cache ttl {settings.cache_ttl_seconds}s, "
        f"{settings.retry_max_attempts} attempts, "
        f"timeout {settings.execution_timeout_seconds}s"
    )
