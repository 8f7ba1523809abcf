"""CLI helpers for building configuration and opening the container."""

from __future__ import annotations

from typing import Any

import typer

from blobtail.cli import _exitcodes as ec
from blobtail.cli._output import print_error
from blobtail.config import BlobTailConfig, config_from_env, load_config
from blobtail.errors import BlobTailError, ConfigError
from blobtail.storage import BlobStore, open_blob_store


def build_config(**overrides: Any) -> BlobTailConfig:
    """Config file, then ``BLOBTAIL_*`` variables, then command-line options."""
    from blobtail.cli import state

    try:
        base = load_config(state.config) if state.config else BlobTailConfig()
        config = config_from_env(base)
        return config.merged(storage_uri=state.storage_uri, **overrides)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(ec.CONFIG_ERROR)


def open_store(config: BlobTailConfig) -> BlobStore:
    """Open the configured container, exiting with a storage error on failure."""
    try:
        return open_blob_store(config)
    except BlobTailError as e:
        print_error(f"Cannot open storage backend: {e}")
        raise typer.Exit(ec.STORAGE_ERROR)
