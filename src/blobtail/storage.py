"""Blob-store contract, storage targets and the in-memory container."""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Protocol, runtime_checkable
from urllib.parse import urlparse

from blobtail.config import INFINITE_LEASE, BlobTailConfig
from blobtail.errors import BlobNotFoundError, StorageBackendError


@dataclass(frozen=True)
class BlobInfo:
    """One entry of a container listing."""

    path: str
    etag: str | None
    content_length: int


@dataclass(frozen=True)
class LeaseHandle:
    """Transient handle for a lease held on one object."""

    path: str
    lease_id: str


class LeaseStatus(str, Enum):
    ACQUIRED = "acquired"
    ALREADY_PRESENT = "already_present"


@dataclass(frozen=True)
class LeaseAttempt:
    """Outcome of a single lease acquisition attempt."""

    status: LeaseStatus
    handle: LeaseHandle | None = None

    @property
    def acquired(self) -> bool:
        return self.status is LeaseStatus.ACQUIRED


@runtime_checkable
class BlobStore(Protocol):
    """Backend-agnostic container contract used by the lease, registry and reader layers."""

    def list_blobs(self, page_size: int = 100) -> Iterator[BlobInfo]: ...

    def get_range(
        self, path: str, start: int | None = None, end: int | None = None
    ) -> tuple[BlobInfo, bytes]: ...

    def create_or_replace(self, path: str, data: bytes) -> BlobInfo: ...

    def acquire_lease(self, path: str, duration: int) -> LeaseAttempt: ...

    def release_lease(self, handle: LeaseHandle) -> None: ...

    def break_lease(self, path: str) -> None: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class StorageTarget:
    """Resolved storage target from a storage URI."""

    backend: str
    uri: str
    bucket: str | None = None
    prefix: str | None = None
    account: str | None = None
    container: str | None = None
    name: str | None = None


def parse_storage_target(storage_uri: str) -> StorageTarget:
    """Resolve backend target from ``memory://``, ``s3://`` or ``azure://`` URIs."""
    parsed = urlparse(storage_uri)

    if parsed.scheme == "memory":
        name = parsed.netloc or parsed.path.strip("/") or "default"
        return StorageTarget(backend="memory", uri=storage_uri, name=name)

    if parsed.scheme == "s3":
        bucket = parsed.netloc
        prefix = parsed.path.lstrip("/").rstrip("/")
        if not bucket:
            raise StorageBackendError("parse_storage_uri", f"Invalid s3 URI: {storage_uri}")
        return StorageTarget(backend="s3", uri=storage_uri, bucket=bucket, prefix=prefix)

    if parsed.scheme == "azure":
        account = parsed.netloc
        container = parsed.path.strip("/")
        if not account or not container or "/" in container:
            raise StorageBackendError(
                "parse_storage_uri",
                f"Invalid azure URI (expected azure://account/container): {storage_uri}",
            )
        return StorageTarget(backend="azure", uri=storage_uri, account=account, container=container)

    raise StorageBackendError(
        "parse_storage_uri",
        f"Unsupported storage URI scheme '{parsed.scheme}' for '{storage_uri}'",
    )


def _storage_uri_for(config: BlobTailConfig) -> str:
    if config.storage_uri:
        return config.storage_uri
    if config.storage_account_name and config.container:
        return f"azure://{config.storage_account_name}/{config.container}"
    raise StorageBackendError(
        "open_blob_store",
        "No storage target configured; set storage_uri or storage_account_name and container",
    )


def open_blob_store(config: BlobTailConfig) -> BlobStore:
    """Open the blob store selected by ``config``."""
    target = parse_storage_target(_storage_uri_for(config))

    if target.backend == "memory":
        assert target.name is not None
        return MemoryBlobStore.named(target.name)

    if target.backend == "s3":
        from blobtail.storage_s3 import S3BlobStore

        assert target.bucket is not None
        return S3BlobStore(bucket=target.bucket, prefix=target.prefix or "", config=config)

    from blobtail.storage_azure import AzureBlobStore

    assert target.account is not None and target.container is not None
    return AzureBlobStore(account=target.account, container=target.container, config=config)


@dataclass
class _MemoryBlob:
    data: bytes
    version: int


@dataclass
class _MemoryLease:
    lease_id: str
    expires_at: float | None


class MemoryBlobStore:
    """Thread-safe in-process container with Azure-like lease semantics."""

    _named: dict[str, MemoryBlobStore] = {}
    _named_lock = threading.Lock()

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._blobs: dict[str, _MemoryBlob] = {}
        self._leases: dict[str, _MemoryLease] = {}
        self._version = 0

    @classmethod
    def named(cls, name: str) -> MemoryBlobStore:
        """Return the process-wide store registered under ``name``."""
        with cls._named_lock:
            store = cls._named.get(name)
            if store is None:
                store = cls()
                cls._named[name] = store
            return store

    @classmethod
    def forget(cls, name: str) -> None:
        with cls._named_lock:
            cls._named.pop(name, None)

    def _info(self, path: str, blob: _MemoryBlob) -> BlobInfo:
        return BlobInfo(path=path, etag=f'"0x{blob.version:X}"', content_length=len(blob.data))

    def _active_lease(self, path: str) -> _MemoryLease | None:
        lease = self._leases.get(path)
        if lease is None:
            return None
        if lease.expires_at is not None and self._clock() >= lease.expires_at:
            del self._leases[path]
            return None
        return lease

    # --- BlobStore ---

    def list_blobs(self, page_size: int = 100) -> Iterator[BlobInfo]:
        with self._lock:
            snapshot = [self._info(p, b) for p, b in sorted(self._blobs.items())]
        page_size = page_size if page_size > 0 else 100
        for i in range(0, len(snapshot), page_size):
            yield from snapshot[i : i + page_size]

    def get_range(
        self, path: str, start: int | None = None, end: int | None = None
    ) -> tuple[BlobInfo, bytes]:
        with self._lock:
            blob = self._blobs.get(path)
            if blob is None:
                raise BlobNotFoundError(path)
            lo = start or 0
            hi = len(blob.data) if end is None else end + 1
            return self._info(path, blob), blob.data[lo:hi]

    def create_or_replace(self, path: str, data: bytes) -> BlobInfo:
        with self._lock:
            self._version += 1
            blob = _MemoryBlob(data=bytes(data), version=self._version)
            self._blobs[path] = blob
            return self._info(path, blob)

    def acquire_lease(self, path: str, duration: int) -> LeaseAttempt:
        with self._lock:
            if path not in self._blobs:
                self._version += 1
                self._blobs[path] = _MemoryBlob(data=b"", version=self._version)
            if self._active_lease(path) is not None:
                return LeaseAttempt(LeaseStatus.ALREADY_PRESENT)
            expires_at = None if duration == INFINITE_LEASE else self._clock() + duration
            lease = _MemoryLease(lease_id=str(uuid.uuid4()), expires_at=expires_at)
            self._leases[path] = lease
            return LeaseAttempt(LeaseStatus.ACQUIRED, LeaseHandle(path, lease.lease_id))

    def release_lease(self, handle: LeaseHandle) -> None:
        with self._lock:
            lease = self._leases.get(handle.path)
            if lease is not None and lease.lease_id == handle.lease_id:
                del self._leases[handle.path]

    def break_lease(self, path: str) -> None:
        with self._lock:
            self._leases.pop(path, None)

    def close(self) -> None:
        pass

    # --- Helpers for local use and tests ---

    def append(self, path: str, data: bytes) -> BlobInfo:
        """Append bytes to a blob, creating it when missing."""
        with self._lock:
            current = self._blobs.get(path)
            self._version += 1
            blob = _MemoryBlob(
                data=(current.data if current else b"") + bytes(data), version=self._version
            )
            self._blobs[path] = blob
            return self._info(path, blob)

    def read(self, path: str) -> bytes:
        return self.get_range(path)[1]

    def exists(self, path: str) -> bool:
        with self._lock:
            return path in self._blobs

    def has_lease(self, path: str) -> bool:
        with self._lock:
            return self._active_lease(path) is not None
