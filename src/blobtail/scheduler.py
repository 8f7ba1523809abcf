"""Fair blob selection driven by per-blob generation counters.

A blob's generation goes up each time a reader claims it, so the blob with
the lowest generation is the one read least recently. After every claim all
generations are rebased so the smallest is 0 again.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from dataclasses import dataclass

from blobtail.registry import Registry, RegistryItem
from blobtail.storage import BlobInfo

logger = logging.getLogger(__name__)

MAX_GENERATION = 2**62 - 1


@dataclass(frozen=True)
class Claim:
    """A blob selected for reading by one reader."""

    path: str
    etag: str | None
    start_offset: int
    generation: int
    content_length: int


def raise_generation(item: RegistryItem) -> int:
    """Bump ``item.generation``, halving it instead of letting it reach the bound."""
    gen = item.generation + 1
    if gen >= MAX_GENERATION:
        gen //= 2
    item.generation = gen
    return gen


def normalize_generations(registry: Registry) -> None:
    """Shift every generation down so that the minimum is 0."""
    if not registry:
        return
    lowest = min(item.generation for item in registry.values())
    if lowest <= 0:
        return
    for item in registry.values():
        item.generation -= lowest


def track_new_blobs(registry: Registry, blobs: Iterable[BlobInfo]) -> list[str]:
    """Add unseen blobs to ``registry`` at offset 0; return the added paths."""
    added: list[str] = []
    for blob in blobs:
        if blob.path not in registry:
            registry[blob.path] = RegistryItem(path=blob.path, etag=blob.etag)
            added.append(blob.path)
    return added


def is_candidate(item: RegistryItem, blob: BlobInfo, reader_id: str) -> bool:
    return item.offset < blob.content_length and item.owner in (None, reader_id)


def select_next(
    registry: Registry,
    blobs: Iterable[BlobInfo],
    reader_id: str,
    *,
    excluded: Collection[str] = (),
) -> Claim | None:
    """Claim the most overdue readable blob for ``reader_id``.

    Mutates ``registry`` (new entries, owner, generations); the caller is
    responsible for saving it while still holding the lease.
    """
    visible = [b for b in blobs if b.path not in excluded]
    added = track_new_blobs(registry, visible)
    if added:
        logger.debug("Tracking %d new blob(s): %s", len(added), added)

    candidates = [b for b in visible if is_candidate(registry[b.path], b, reader_id)]
    if not candidates:
        return None

    chosen = min(candidates, key=lambda b: (registry[b.path].generation, b.path))
    item = registry[chosen.path]
    item.owner = reader_id
    raise_generation(item)
    normalize_generations(registry)

    logger.debug(
        "Reader %s claimed %s at offset %d (generation %d)",
        reader_id,
        chosen.path,
        item.offset,
        item.generation,
    )
    return Claim(
        path=chosen.path,
        etag=chosen.etag,
        start_offset=item.offset,
        generation=item.generation,
        content_length=chosen.content_length,
    )


def release_owner(registry: Registry, reader_id: str) -> list[str]:
    """Clear ownership held by ``reader_id``; return the affected paths."""
    released: list[str] = []
    for item in registry.values():
        if item.owner == reader_id:
            item.owner = None
            released.append(item.path)
    return released
