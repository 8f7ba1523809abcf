"""Output formatting helpers for the CLI."""

from __future__ import annotations

import json
from typing import Any

import typer


def print_table(headers: list[str], rows: list[list[Any]], *, json_mode: bool = False) -> None:
    """Print rows as aligned columns, or as a JSON array of objects."""
    if json_mode:
        typer.echo(json.dumps([dict(zip(headers, row)) for row in rows], indent=2, default=str))
        return

    if not rows:
        typer.echo("(empty)")
        return

    cells = [["-" if v is None else str(v) for v in row] for row in rows]
    widths = [max(len(h), *(len(r[i]) for r in cells)) for i, h in enumerate(headers)]
    typer.echo("  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip())
    typer.echo("  ".join("-" * w for w in widths))
    for row in cells:
        typer.echo("  ".join(v.ljust(w) for v, w in zip(row, widths)).rstrip())


def print_object(data: dict[str, Any], *, json_mode: bool = False) -> None:
    """Print one object as JSON or ``key: value`` lines."""
    if json_mode:
        typer.echo(json.dumps(data, indent=2, default=str))
        return
    for k, v in data.items():
        if isinstance(v, (list, tuple)):
            v = ", ".join(str(x) for x in v) or "(none)"
        typer.echo(f"{k}: {v}")


def print_error(msg: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"Error: {msg}", err=True)
