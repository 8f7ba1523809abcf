"""Incremental extraction of top-level JSON objects from partially fetched bytes.

Only brace balance is tracked: the scanner does not validate JSON, it finds
where each top-level ``{...}`` ends so batches can be handed to a decoder
without waiting for the whole blob. Braces inside string literals are
ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

OPEN = ord("{")
CLOSE = ord("}")
QUOTE = ord('"')
BACKSLASH = ord("\\")


class SplitStatus(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class Split:
    """Result of one extraction.

    ``payload`` holds the complete objects found, from the first opening
    brace to the end of the last object. A ``MALFORMED`` split may still
    carry the objects completed before the bad brace. ``consumed`` counts
    every byte the cursor moved past, including framing discarded before the
    first object.
    """

    status: SplitStatus
    payload: bytes = b""
    consumed: int = 0
    count: int = 0
    position: int = 0


class JsonBuffer:
    """Immutable bytes plus a cursor marking how much has been extracted."""

    def __init__(self, data: bytes, cursor: int = 0) -> None:
        self._data = bytes(data)
        self.cursor = cursor

    @property
    def data(self) -> bytes:
        return self._data

    def remaining(self) -> memoryview:
        return memoryview(self._data)[self.cursor :]

    def __len__(self) -> int:
        return len(self._data) - self.cursor

    def has_object_start(self) -> bool:
        return self._data.find(b"{", self.cursor) != -1


def _scan(data: bytes, start: int, batch_size: int) -> tuple[SplitStatus, int, int, int]:
    """Scan ``data`` from ``start``, which must be an opening brace.

    Returns ``(status, end, count, position)``: ``end`` is the index just past
    the last completed object and ``position`` where scanning stopped.
    """
    last_open = data.rfind(b"{")
    depth = 0
    count = 0
    end = start
    in_string = False
    escaped = False
    i = start
    n = len(data)
    while i < n:
        b = data[i]
        if in_string:
            if escaped:
                escaped = False
            elif b == BACKSLASH:
                escaped = True
            elif b == QUOTE:
                in_string = False
        elif b == QUOTE:
            in_string = depth > 0
        elif b == OPEN:
            depth += 1
        elif b == CLOSE:
            if depth == 0:
                # A closing brace between objects is only framing when no
                # further object follows it.
                if i < last_open:
                    return SplitStatus.MALFORMED, end, count, i
                break
            depth -= 1
            if depth == 0:
                count += 1
                end = i + 1
                if count >= batch_size:
                    return SplitStatus.COMPLETE, end, count, i
        i += 1

    if count > 0:
        return SplitStatus.COMPLETE, end, count, i
    return SplitStatus.INCOMPLETE, end, count, i


def extract_batch(buffer: JsonBuffer, batch_size: int, *, final: bool = False) -> Split:
    """Take up to ``batch_size`` complete objects from ``buffer``.

    The cursor moves past whatever was extracted, including framing before
    it; it does not move when nothing was. A buffer holding no opening brace,
    or only a partial trailing object, is ``INCOMPLETE``: more bytes are
    needed. With ``final=True`` no more bytes will come, so a buffer ending
    inside an object is ``MALFORMED`` instead.

    A tailed blob can always grow, so the poll loop never passes
    ``final=True``: an unbalanced ``{{}`` at the end of a chunk waits for the
    writer instead of failing.
    """
    if batch_size <= 0:
        batch_size = 1

    data = buffer.data
    first = data.find(b"{", buffer.cursor)
    if first == -1:
        return Split(SplitStatus.INCOMPLETE, position=buffer.cursor)

    status, end, count, position = _scan(data, first, batch_size)
    if status is SplitStatus.INCOMPLETE:
        if final:
            return Split(SplitStatus.MALFORMED, position=position)
        return Split(SplitStatus.INCOMPLETE, position=position)
    if count == 0:
        return Split(status, position=position)

    consumed = end - buffer.cursor
    payload = data[first:end]
    buffer.cursor = end
    return Split(status, payload=payload, consumed=consumed, count=count, position=position)


def frame(payload: bytes, head: bytes = b"", tail: bytes = b"") -> bytes:
    """Wrap a batch with the blob's non-repeating head and tail bytes."""
    return head + payload + tail
