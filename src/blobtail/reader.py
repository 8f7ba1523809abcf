"""Bounded range reads over growing blobs with non-repeating head/tail framing."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from blobtail.config import DEFAULT_MAX_BUFFER_SIZE
from blobtail.storage import BlobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Chunk:
    """Bytes fetched from one blob in one poll cycle.

    ``offset`` is the committed offset the read resumed from and ``start``
    the absolute position of ``data[0]``.
    """

    path: str
    offset: int
    start: int
    data: bytes
    head: bytes
    content_length: int
    etag: str | None
    is_final: bool

    @property
    def end(self) -> int:
        return self.start + len(self.data)

    @property
    def reaches_end(self) -> bool:
        """True when ``data`` runs to the blob's current end, tail framing included."""
        return self.end >= self.content_length


class ChunkedBlobReader:
    """Reads blobs in bounded chunks and computes resume offsets.

    ``head_bytes`` at the start of a blob and ``tail_bytes`` at its end are
    framing written once (e.g. ``{"records":[`` and ``]}``). The head is
    fetched once per blob and kept for re-framing; the tail is overwritten as
    the blob grows, so a resumed read starts ``tail_bytes`` before the
    committed offset.
    """

    def __init__(
        self,
        store: BlobStore,
        *,
        head_bytes: int = 0,
        tail_bytes: int = 0,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
    ) -> None:
        self._store = store
        self.head_bytes = head_bytes
        self.tail_bytes = tail_bytes
        self.max_buffer_size = max_buffer_size
        self._heads: dict[str, bytes] = {}

    def head_for(self, path: str) -> bytes:
        if self.head_bytes <= 0:
            return b""
        cached = self._heads.get(path)
        if cached is not None:
            return cached
        _info, head = self._store.get_range(path, 0, self.head_bytes - 1)
        # Don't cache a head the writer hasn't finished yet.
        if len(head) == self.head_bytes:
            self._heads[path] = head
        return head

    def effective_start(self, start_offset: int) -> int:
        if start_offset == 0:
            return self.head_bytes
        return max(0, start_offset - self.tail_bytes)

    def read_chunk(self, path: str, start_offset: int) -> Chunk:
        head = self.head_for(path)
        start = self.effective_start(start_offset)
        end = start + self.max_buffer_size - 1

        info, data = self._store.get_range(path, start, end)
        # Less than a full budget remained: this is the last chunk for now.
        is_final = info.content_length < end + 1
        logger.debug(
            "Read %s [%d, %d) of %d bytes (final=%s)",
            path,
            start,
            start + len(data),
            info.content_length,
            is_final,
        )
        return Chunk(
            path=path,
            offset=start_offset,
            start=start,
            data=data,
            head=head,
            content_length=info.content_length,
            etag=info.etag,
            is_final=is_final,
        )

    def tail_for(self, chunk: Chunk) -> bytes:
        """The blob's current tail framing, for re-framing batches of ``chunk``."""
        if self.tail_bytes <= 0 or chunk.content_length < self.tail_bytes:
            return b""
        if chunk.reaches_end and len(chunk.data) >= self.tail_bytes:
            return chunk.data[-self.tail_bytes :]
        lo = chunk.content_length - self.tail_bytes
        _info, tail = self._store.get_range(chunk.path, lo, chunk.content_length - 1)
        return tail

    def trailing_framing(self, chunk: Chunk) -> int:
        """How many bytes at the end of ``chunk.data`` are the blob's tail framing."""
        tail_start = chunk.content_length - self.tail_bytes
        return min(len(chunk.data), max(0, chunk.end - tail_start))

    def commit_offset(self, chunk: Chunk, consumed: int) -> int:
        """Offset to store after ``consumed`` bytes of ``chunk`` reached the sink.

        The offset lands ``tail_bytes`` past the last consumed byte so the next
        read, after its tail rewind, starts exactly where consumption stopped.
        It can sit past the blob's current end while the writer has not yet
        written the tail.
        """
        if consumed <= 0:
            return chunk.offset
        return max(chunk.start + consumed + self.tail_bytes, chunk.offset)

    def forget(self, path: str) -> None:
        self._heads.pop(path, None)
