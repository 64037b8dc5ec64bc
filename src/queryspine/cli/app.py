"""
Root Typer application for the query-spine CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from queryspine.cli.config import app as config_app
from queryspine.cli.query import app as query_app

app = Typer(
    name="query-spine",
    help="query-spine — canonicalize, fingerprint and explain dashboard queries.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from queryspine import __version__

        typer.echo(f"query-spine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(  # noqa: UP007
        None, "--log-level", help="Log level (default: QUERYSPINE_LOG_LEVEL)."
    ),
) -> None:
    """query-spine CLI — inspect requests and configuration."""
    from pydantic import ValidationError

    from queryspine.core.logging import configure_logging
    from queryspine.core.settings import get_settings

    try:
        settings = get_settings()
        level, json_format = log_level or settings.log_level, settings.log_json
    except ValidationError:
        # reported by `config validate`
        level, json_format = log_level or "INFO", None
    try:
        configure_logging(level=level, json_format=json_format)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--log-level") from e


app.add_typer(query_app, name="query", help="Canonical form, fingerprint and statement of a request.")
app.add_typer(config_app, name="config", help="Configuration inspection.")


if __name__ == "__main__":
    app()
