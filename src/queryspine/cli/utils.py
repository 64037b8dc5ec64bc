"""
CLI utility helpers: output consoles and input loading.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from queryspine.core.errors import ConfigError, QuerySpineError
from queryspine.query.catalog import QueryCatalog

console = Console()
err_console = Console(stderr=True)


def load_catalog(path: Path) -> QueryCatalog:
    """Read a catalog JSON file."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read catalog {path}: {e}", cause=e) from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Catalog {path} is not valid JSON: {e}", cause=e) from e
    return QueryCatalog.from_dict(data)


def load_params(raw: str) -> dict[str, Any]:
    """Parse request parameters from inline JSON or ``@path/to/file.json``."""
    text = Path(raw[1:]).read_text(encoding="utf-8") if raw.startswith("@") else raw
    try:
        params = json.loads(text)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"not valid JSON: {e}", param_hint="--params") from e
    if not isinstance(params, dict):
        raise typer.BadParameter("must be a JSON object", param_hint="--params")
    return params


def fail(error: QuerySpineError, exit_code: int = 1) -> typer.Exit:
    """Print ``error`` to stderr and return the Exit to raise."""
    err_console.print(f"[red]{type(error).__name__}:[/red] {error.message}")
    return typer.Exit(exit_code)
