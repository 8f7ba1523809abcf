"""Mutual exclusion over the registry through a lease on the lock object."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from contextlib import contextmanager
from typing import Iterator

from blobtail.errors import LeaseStuckError, LeaseTimeoutError, StorageBackendError
from blobtail.storage import BlobStore, LeaseHandle

logger = logging.getLogger(__name__)


class LeaseManager:
    """Acquire and release leases with bounded retries.

    Contention is retried ``max_retries`` times, ``retry_interval`` seconds
    apart. Any other acquisition failure is taken to mean an orphaned lease
    (e.g. a holder that crashed, or a timed-out request that left an infinite
    lease behind): the lease is broken and the acquire retried. Breaks draw
    from the same retry budget.
    """

    def __init__(
        self,
        store: BlobStore,
        *,
        duration: int,
        max_retries: int = 60,
        retry_interval: float = 1.0,
        sleep: Callable[[float], object] = time.sleep,
    ) -> None:
        self._store = store
        self.duration = duration
        self.max_retries = max_retries
        self.retry_interval = retry_interval
        self._sleep = sleep

    def acquire(
        self,
        resource: str,
        duration: int | None = None,
        max_retries: int | None = None,
        retry_interval: float | None = None,
    ) -> LeaseHandle:
        duration = self.duration if duration is None else duration
        max_retries = self.max_retries if max_retries is None else max_retries
        retry_interval = self.retry_interval if retry_interval is None else retry_interval

        attempts = 0
        while True:
            attempts += 1
            try:
                attempt = self._store.acquire_lease(resource, duration)
            except (LeaseStuckError, StorageBackendError) as e:
                if attempts > max_retries:
                    raise LeaseTimeoutError(resource, attempts) from e
                logger.warning("Breaking lease on %s after acquire failure: %s", resource, e)
                try:
                    self._store.break_lease(resource)
                except StorageBackendError as break_err:
                    logger.warning("Could not break lease on %s: %s", resource, break_err)
                    self._sleep(retry_interval)
                continue

            if attempt.acquired:
                assert attempt.handle is not None
                if attempts > 1:
                    logger.debug("Acquired lease on %s after %d attempts", resource, attempts)
                return attempt.handle

            if attempts > max_retries:
                raise LeaseTimeoutError(resource, attempts)
            self._sleep(retry_interval)

    def release(self, handle: LeaseHandle | None) -> None:
        """Release ``handle``; a no-op for ``None`` or an already released lease."""
        if handle is None:
            return
        try:
            self._store.release_lease(handle)
        except StorageBackendError as e:
            # The lease still expires on its own.
            logger.warning("Failed to release lease on %s: %s", handle.path, e)

    @contextmanager
    def held(self, resource: str) -> Iterator[LeaseHandle]:
        """Hold a lease on ``resource`` for the duration of the block."""
        handle = self.acquire(resource)
        try:
            yield handle
        finally:
            self.release(handle)
