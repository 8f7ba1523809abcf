"""blobtail run: tail the container and write records to stdout."""

from __future__ import annotations

import logging
import signal
import sys
from typing import Any, Optional

import typer

from blobtail.cli import _exitcodes as ec
from blobtail.cli._output import print_error
from blobtail.cli._storage import build_config, open_store
from blobtail.errors import BlobTailError
from blobtail.runtime import BlobTail
from blobtail.sinks import StreamSink

logger = logging.getLogger(__name__)


def run_cmd(
    reader_id: Optional[str] = typer.Option(None, "--reader-id", help="Reader identity in the registry"),
    interval: Optional[float] = typer.Option(None, "--interval", help="Idle seconds between polls"),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", min=1, help="Stop after this many poll cycles"
    ),
    registry_create_policy: Optional[str] = typer.Option(
        None, "--registry-create-policy", help="resume or start_over (first run only)"
    ),
    json_split_policy: Optional[str] = typer.Option(
        None,
        "--json-split-policy",
        help="do_not_break, with_head_tail or without_head_tail",
    ),
    head_bytes: Optional[int] = typer.Option(None, "--head-bytes", help="Framing bytes at blob start"),
    tail_bytes: Optional[int] = typer.Option(None, "--tail-bytes", help="Framing bytes at blob end"),
    batch_count: Optional[int] = typer.Option(
        None, "--batch-count", help="JSON objects per emitted batch"
    ),
) -> None:
    """Tail blobs until interrupted, one record per line on stdout."""
    config = build_config(
        reader_id=reader_id,
        interval=interval,
        registry_create_policy=registry_create_policy,
        json_split_policy=json_split_policy,
        file_head_bytes=head_bytes,
        file_tail_bytes=tail_bytes,
        split_batch_count=batch_count,
    )
    store = open_store(config)

    try:
        tail = BlobTail(config, store=store)
    except BlobTailError as e:
        store.close()
        print_error(str(e))
        raise typer.Exit(ec.GENERAL_ERROR)

    previous: dict[int, Any] = {}

    def _request_stop(signum: int, _frame: Any) -> None:
        logger.info("Received signal %d, stopping reader %s", signum, tail.reader_id)
        tail.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _request_stop)
        except ValueError:
            # Not on the main thread; rely on max_iterations or the caller.
            pass

    logger.info("Reader %s tailing %s", tail.reader_id, config.storage_uri)
    try:
        tail.run(StreamSink(sys.stdout.buffer), max_iterations=max_iterations)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        store.close()
