"""Shared fixtures for CLI tests."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from blobtail.cli import app
from blobtail.storage import MemoryBlobStore

if TYPE_CHECKING:
    from click.testing import Result


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def memory_name():
    """A fresh named in-memory container, forgotten after the test."""
    name = f"cli-{uuid.uuid4().hex[:8]}"
    yield name
    MemoryBlobStore.forget(name)


@pytest.fixture
def container(memory_name):
    return MemoryBlobStore.named(memory_name)


@pytest.fixture
def storage_uri(memory_name):
    return f"memory://{memory_name}"


def invoke(runner: CliRunner, args: list[str], storage_uri: str | None = None) -> "Result":
    """Invoke the CLI, injecting --storage-uri before the subcommand."""
    if storage_uri:
        args = ["--storage-uri", storage_uri] + args
    return runner.invoke(app, args, catch_exceptions=False)
