"""Downstream record sinks."""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable
from typing import BinaryIO, Protocol, runtime_checkable


@runtime_checkable
class RecordSink(Protocol):
    """Receives one decoded unit: a whole chunk, or one batch of JSON objects."""

    def emit(self, record: bytes) -> None: ...


class QueueSink:
    """Enqueue records for a consumer thread."""

    def __init__(self, q: queue.Queue[bytes] | None = None, *, timeout: float | None = None) -> None:
        self.queue: queue.Queue[bytes] = q if q is not None else queue.Queue()
        self._timeout = timeout

    def emit(self, record: bytes) -> None:
        self.queue.put(record, timeout=self._timeout)


class CallbackSink:
    def __init__(self, callback: Callable[[bytes], object]) -> None:
        self._callback = callback

    def emit(self, record: bytes) -> None:
        self._callback(record)


class StreamSink:
    """Write each record to a binary stream followed by a newline."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def emit(self, record: bytes) -> None:
        with self._lock:
            self._stream.write(record)
            if not record.endswith(b"\n"):
                self._stream.write(b"\n")
            self._stream.flush()
