"""Structured error types for blobtail."""

from __future__ import annotations


class BlobTailError(Exception):
    """Base error for all blobtail errors."""


class ConfigError(BlobTailError):
    """Raised when a configuration value is out of range or unknown."""

    def __init__(self, option: str, detail: str) -> None:
        self.option = option
        self.detail = detail
        super().__init__(f"Invalid configuration for '{option}': {detail}")


class LeaseContentionError(BlobTailError):
    """Raised when a lease is held by someone else."""


class LeaseTimeoutError(LeaseContentionError):
    """Raised when a lease cannot be acquired within the retry budget."""

    def __init__(self, resource: str, attempts: int) -> None:
        self.resource = resource
        self.attempts = attempts
        super().__init__(f"Could not acquire lease on '{resource}' after {attempts} attempts")


class LeaseStuckError(BlobTailError):
    """Raised by a store when a lease is in a state that only a forced break can clear."""

    def __init__(self, resource: str, detail: str) -> None:
        self.resource = resource
        self.detail = detail
        super().__init__(f"Lease on '{resource}' is stuck: {detail}")


class RegistryNotFoundError(BlobTailError):
    """Raised when the registry object does not exist yet."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Registry '{path}' not found")


class RegistryCorruptError(BlobTailError):
    """Raised when the registry document cannot be parsed into registry items."""

    def __init__(self, path: str, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"Registry '{path}' is corrupt: {detail}")


class StorageBackendError(BlobTailError):
    """Raised when backend storage operations fail."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage backend error during {operation}: {detail}")


class MalformedStructureError(BlobTailError):
    """Raised when a JSON buffer has unbalanced braces."""

    def __init__(self, path: str, offset: int, detail: str = "unbalanced braces") -> None:
        self.path = path
        self.offset = offset
        self.detail = detail
        super().__init__(f"Malformed JSON in '{path}' near offset {offset}: {detail}")


class BlobNotFoundError(BlobTailError):
    """Raised when a blob does not exist in the container."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Blob '{path}' not found")
