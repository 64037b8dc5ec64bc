"""
CLI: ``query-spine query`` — inspect how a request is canonicalized.

All commands are offline: nothing is submitted to an engine.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.table import Table

from queryspine.cli.utils import console, fail, load_catalog, load_params
from queryspine.core.errors import ConfigError, InvalidQuery
from queryspine.query.canonical import QueryCanonicalizer
from queryspine.query.fingerprint import fingerprint
from queryspine.query.models import CanonicalQuery, QueryRequest
from queryspine.query.statement import render_statement

app = typer.Typer(no_args_is_help=True)

CatalogOption = typer.Option(..., "--catalog", "-c", exists=True, dir_okay=False, help="Catalog JSON file")
ParamsOption = typer.Option(..., "--params", "-p", help="Request parameters as JSON, or @file.json")


def _canonicalize(catalog_path: Path, params: str) -> tuple[QueryCanonicalizer, CanonicalQuery]:
    try:
        canonicalizer = QueryCanonicalizer(load_catalog(catalog_path))
    except ConfigError as e:
        raise fail(e, exit_code=1) from e
    request = QueryRequest(caller="cli", params=load_params(params))
    try:
        return canonicalizer, canonicalizer.canonicalize(request)
    except InvalidQuery as e:
        raise fail(e, exit_code=2) from e


@app.command("canonicalize")
def canonicalize_command(
    catalog: Path = CatalogOption,
    params: str = ParamsOption,
) -> None:
    """Print the canonical form of a request."""
    _, canonical = _canonicalize(catalog, params)
    typer.echo(canonical.to_bytes().decode("ascii"))


@app.command("fingerprint")
def fingerprint_command(
    catalog: Path = CatalogOption,
    params: str = ParamsOption,
) -> None:
    """Print the fingerprint (cache key) of a request."""
    _, canonical = _canonicalize(catalog, params)
    typer.echo(fingerprint(canonical))


@app.command("explain")
def explain_command(
    catalog: Path = CatalogOption,
    params: str = ParamsOption,
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json"),
) -> None:
    """Show canonical form, fingerprint and the statement that would be submitted."""
    canonicalizer, canonical = _canonicalize(catalog, params)
    statement = render_statement(canonical, canonicalizer.catalog)
    fp = fingerprint(canonical)

    if format == "json":
        console.print_json(
            json.dumps(
                {
                    "fingerprint": fp,
                    "canonical": canonical.as_dict(),
                    "sql": statement.sql,
                    "parameters": [str(p) for p in statement.parameters],
                }
            )
        )
        return

    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Dataset", canonical.dataset)
    table.add_row("Fingerprint", fp)
    for name, value in canonical.as_dict().items():
        table.add_row(f"  {name}", json.dumps(value))
    table.add_row("SQL", statement.sql)
    table.add_row("Parameters", ", ".join(str(p) for p in statement.parameters) or "-")
    console.print(table)
