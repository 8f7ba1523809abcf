"""Blobtail: lease-coordinated, multi-reader tailing of append-only blobs."""

__version__ = "0.1.0"

from blobtail.config import BlobTailConfig, config_from_env, load_config
from blobtail.errors import (
    BlobNotFoundError,
    BlobTailError,
    ConfigError,
    LeaseContentionError,
    LeaseStuckError,
    LeaseTimeoutError,
    MalformedStructureError,
    RegistryCorruptError,
    RegistryNotFoundError,
    StorageBackendError,
)
from blobtail.lease import LeaseManager
from blobtail.reader import Chunk, ChunkedBlobReader
from blobtail.registry import Registry, RegistryItem, RegistryStore
from blobtail.runtime import BlobTail, ReaderState
from blobtail.scheduler import Claim, select_next
from blobtail.sinks import CallbackSink, QueueSink, RecordSink, StreamSink
from blobtail.splitter import JsonBuffer, Split, SplitStatus, extract_batch
from blobtail.storage import BlobInfo, BlobStore, LeaseHandle, MemoryBlobStore, open_blob_store

__all__ = [
    "__version__",
    "BlobTail",
    "ReaderState",
    "BlobTailConfig",
    "load_config",
    "config_from_env",
    "BlobStore",
    "BlobInfo",
    "LeaseHandle",
    "MemoryBlobStore",
    "open_blob_store",
    "LeaseManager",
    "Registry",
    "RegistryItem",
    "RegistryStore",
    "Claim",
    "select_next",
    "Chunk",
    "ChunkedBlobReader",
    "JsonBuffer",
    "Split",
    "SplitStatus",
    "extract_batch",
    "RecordSink",
    "QueueSink",
    "CallbackSink",
    "StreamSink",
    "BlobTailError",
    "ConfigError",
    "LeaseContentionError",
    "LeaseTimeoutError",
    "LeaseStuckError",
    "RegistryNotFoundError",
    "RegistryCorruptError",
    "StorageBackendError",
    "MalformedStructureError",
    "BlobNotFoundError",
]
