"""Blobtail CLI: run a reader and inspect the shared registry."""

from __future__ import annotations

import logging
import sys
from typing import Optional

import typer

from blobtail.cli import registry, run

app = typer.Typer(
    name="blobtail",
    help="Blobtail CLI: tail append-only blobs with a fleet of cooperating readers.",
    no_args_is_help=True,
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_log_handler: logging.Handler | None = None


def _configure_logging(level: str) -> None:
    """Send blobtail logs to the current stderr at ``level``."""
    global _log_handler
    pkg_logger = logging.getLogger("blobtail")
    if _log_handler is not None:
        pkg_logger.removeHandler(_log_handler)
    _log_handler = logging.StreamHandler(sys.stderr)
    _log_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    pkg_logger.addHandler(_log_handler)
    pkg_logger.setLevel(level)


class _State:
    """Global CLI state shared across subcommands."""

    storage_uri: str | None = None
    config: str | None = None
    json_output: bool = False
    log_level: str = "WARNING"


state = _State()


def _version_callback(value: bool) -> None:
    if value:
        from blobtail import __version__

        print(f"blobtail {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    storage_uri: Optional[str] = typer.Option(
        None,
        "--storage-uri",
        envvar="BLOBTAIL_STORAGE_URI",
        help="Container URI (memory://name, s3://bucket/prefix or azure://account/container)",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="BLOBTAIL_CONFIG",
        help="YAML or JSON config file",
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output when supported"),
    log_level: str = typer.Option(
        "WARNING", "--log-level", envvar="BLOBTAIL_LOG_LEVEL", help="Logging level"
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version", is_eager=True, callback=_version_callback
    ),
) -> None:
    """Global options for all blobtail commands."""
    from blobtail.storage import parse_storage_target

    if storage_uri:
        try:
            parse_storage_target(storage_uri)
        except Exception as e:
            raise typer.BadParameter(str(e), param_hint="--storage-uri")

    level = log_level.upper()
    if level not in LOG_LEVELS:
        raise typer.BadParameter(
            f"expected one of {', '.join(LOG_LEVELS)}", param_hint="--log-level"
        )
    _configure_logging(level)

    state.storage_uri = storage_uri
    state.config = config
    state.json_output = json_output
    state.log_level = level
    if ctx.invoked_subcommand is None and not version:
        print(ctx.get_help())
        raise typer.Exit()


app.add_typer(registry.app, name="registry", help="Inspect and repair the shared registry")

app.command(name="run")(run.run_cmd)


def main() -> None:
    """Entry point for the blobtail CLI."""
    app()
