"""Poll loop: claim a blob, read a chunk, hand records to a sink, commit progress."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from blobtail.config import BlobTailConfig
from blobtail.errors import BlobTailError, MalformedStructureError, RegistryNotFoundError
from blobtail.lease import LeaseManager
from blobtail.reader import Chunk, ChunkedBlobReader
from blobtail.registry import Registry, RegistryItem, RegistryStore
from blobtail.scheduler import Claim, release_owner, select_next
from blobtail.sinks import RecordSink
from blobtail.splitter import JsonBuffer, SplitStatus, extract_batch, frame
from blobtail.storage import BlobInfo, BlobStore, open_blob_store

logger = logging.getLogger(__name__)


class ReaderState(str, Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    READING = "reading"
    DECODING = "decoding"
    COMMITTING = "committing"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class _Progress:
    consumed: int = 0


class BlobTail:
    """One reader in a fleet cooperatively tailing the blobs of a container.

    Readers share nothing but the container. Each cycle takes the registry
    lease twice, once to claim a blob and once to commit the new offset, and
    holds it only for a single load-mutate-save.
    """

    def __init__(
        self,
        config: BlobTailConfig,
        *,
        store: BlobStore | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        self._config = config
        self.reader_id = config.reader_id or str(uuid.uuid4())

        self._owns_store = store is None
        self._store: BlobStore = store if store is not None else open_blob_store(config)
        self._leases = LeaseManager(
            self._store,
            duration=config.registry_lease_duration,
            max_retries=config.lease_retry_count,
            retry_interval=config.lease_retry_interval_s,
            sleep=sleep or self._sleep,
        )
        self._registry = RegistryStore(self._store, config.registry_path)
        self._reader = ChunkedBlobReader(
            self._store,
            head_bytes=config.file_head_bytes,
            tail_bytes=config.file_tail_bytes,
            max_buffer_size=config.max_buffer_size,
        )
        self._excluded = frozenset({config.registry_path, config.lock_path})
        self._stop_event = threading.Event()
        self.state = ReaderState.IDLE

    def __enter__(self) -> BlobTail:
        return self

    def __exit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> None:
        self.close()

    def _sleep(self, seconds: float) -> None:
        # Only a pending claim gives up early on stop; commits and cleanup back off fully.
        if self.state is ReaderState.CLAIMING:
            self._stop_event.wait(seconds)
        else:
            time.sleep(seconds)

    @property
    def config(self) -> BlobTailConfig:
        return self._config

    @property
    def store(self) -> BlobStore:
        return self._store

    def close(self) -> None:
        if self._owns_store:
            self._store.close()

    # --- Claiming ---

    def list_blobs(self) -> list[BlobInfo]:
        """All data blobs in the container, excluding the registry and lock objects."""
        return [
            b
            for b in self._store.list_blobs(self._config.blob_list_page_size)
            if b.path not in self._excluded
        ]

    def register_for_read(self) -> Claim | None:
        """Pick the next blob for this reader and record the claim in the registry."""
        self.state = ReaderState.CLAIMING
        blobs = self.list_blobs()
        with self._leases.held(self._config.lock_path):
            registry = self._registry.load_or_create(blobs, self._config.registry_create_policy)
            claim = select_next(registry, blobs, self.reader_id, excluded=self._excluded)
            self._registry.save(registry)
        return claim

    # --- One cycle ---

    def process(self, sink: RecordSink) -> bool:
        """Run one poll cycle. Returns True when the idle interval should follow."""
        claim = self.register_for_read()
        if claim is None:
            logger.debug("Reader %s found nothing to read", self.reader_id)
            return True

        chunk: Chunk | None = None
        progress = _Progress()
        try:
            self.state = ReaderState.READING
            chunk = self._reader.read_chunk(claim.path, claim.start_offset)
            self.state = ReaderState.DECODING
            self._decode(chunk, sink, progress)
        finally:
            self.state = ReaderState.COMMITTING
            self._commit(claim, chunk, progress.consumed)

        if progress.consumed == 0 and not chunk.is_final and chunk.data:
            logger.warning(
                "No complete record within %d bytes of %s at offset %d; "
                "max_buffer_size may be too small",
                len(chunk.data),
                chunk.path,
                chunk.start,
            )
            return True
        return chunk.is_final

    def _decode(self, chunk: Chunk, sink: RecordSink, progress: _Progress) -> None:
        if not chunk.data:
            return
        if self._config.splits_json:
            self._emit_batches(chunk, sink, progress)
            return

        content = chunk.data
        if self._config.json_records:
            # Drop separators left over from the previous chunk (e.g. a comma).
            first = content.find(b"{")
            if first == -1:
                self._consume_rest(chunk, progress)
                return
            content = content[first:]
        sink.emit(chunk.head + content)
        self._consume_rest(chunk, progress)

    def _consume_rest(self, chunk: Chunk, progress: _Progress) -> None:
        # Everything but the blob's tail framing, which the next read picks up again.
        rest = len(chunk.data) - self._reader.trailing_framing(chunk)
        progress.consumed = max(progress.consumed, rest)

    def _emit_batches(self, chunk: Chunk, sink: RecordSink, progress: _Progress) -> None:
        framed = self._config.json_split_policy == "with_head_tail"
        head = chunk.head if framed else b""
        tail = self._reader.tail_for(chunk) if framed else b""

        buffer = JsonBuffer(chunk.data)
        while len(buffer) > self._reader.tail_bytes:
            split = extract_batch(buffer, self._config.split_batch_count)
            if split.payload:
                logger.debug("Emitting %d object(s) from %s", split.count, chunk.path)
                sink.emit(frame(split.payload, head, tail))
                progress.consumed += split.consumed
            if split.status is SplitStatus.MALFORMED:
                raise MalformedStructureError(chunk.path, chunk.start + split.position)
            if split.status is SplitStatus.INCOMPLETE:
                break

        if not buffer.has_object_start():
            # Whatever is left is separators or tail framing.
            self._consume_rest(chunk, progress)

    # --- Committing ---

    def _commit(self, claim: Claim, chunk: Chunk | None, consumed: int) -> None:
        if chunk is None:
            new_offset = claim.start_offset
            etag = claim.etag
        else:
            new_offset = self._reader.commit_offset(chunk, consumed)
            etag = chunk.etag or claim.etag

        with self._leases.held(self._config.lock_path):
            registry = self._registry.load()
            item = registry.get(claim.path)
            if item is None:
                item = RegistryItem(path=claim.path, generation=claim.generation)
                registry[claim.path] = item
            item.offset = max(item.offset, new_offset)
            item.etag = etag
            if item.owner in (None, self.reader_id):
                item.owner = None
            else:
                logger.warning(
                    "%s was claimed by %s while %s was reading it", claim.path, item.owner, self.reader_id
                )
            self._registry.save(registry)
        logger.debug("Committed %s at offset %d", claim.path, new_offset)

    # --- Lifecycle ---

    def run(self, sink: RecordSink, *, max_iterations: int | None = None) -> None:
        """Poll until stopped. Errors abort the current cycle only."""
        iterations = 0
        try:
            while not self._stop_event.is_set():
                if max_iterations is not None and iterations >= max_iterations:
                    break
                idle = True
                try:
                    idle = self.process(sink)
                except BlobTailError as e:
                    logger.error("Reader %s aborted poll cycle: %s", self.reader_id, e)
                except Exception:
                    logger.exception("Reader %s hit an unexpected error", self.reader_id)
                iterations += 1

                if max_iterations is not None and iterations >= max_iterations:
                    break
                if idle:
                    self.state = ReaderState.IDLE
                    logger.debug("Idling %.1fs", self._config.interval)
                    self._stop_event.wait(self._config.interval)
        finally:
            self.state = ReaderState.STOPPING
            self.cleanup_registry()
            self.state = ReaderState.STOPPED

    def stop(self) -> None:
        """Ask ``run`` to finish the in-flight cycle and shut down."""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def cleanup_registry(self) -> list[str]:
        """Release every blob this reader still owns. Best effort."""
        try:
            with self._leases.held(self._config.lock_path):
                registry: Registry = self._registry.load()
                released = release_owner(registry, self.reader_id)
                if released:
                    self._registry.save(registry)
        except RegistryNotFoundError:
            return []
        except BlobTailError as e:
            logger.warning("Registry cleanup for reader %s failed: %s", self.reader_id, e)
            return []
        if released:
            logger.info("Reader %s released %s", self.reader_id, released)
        return released
