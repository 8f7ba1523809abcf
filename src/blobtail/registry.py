"""Shared registry of per-blob read progress, persisted as one JSON document."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from blobtail.errors import BlobNotFoundError, RegistryCorruptError, RegistryNotFoundError
from blobtail.storage import BlobInfo, BlobStore

logger = logging.getLogger(__name__)


class RegistryItem(BaseModel):
    """Read progress for one blob.

    Persisted with the field names ``file_path``, ``etag``, ``reader``,
    ``offset`` and ``gen``; unknown fields are ignored on load.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    path: str = Field(alias="file_path")
    etag: str | None = None
    owner: str | None = Field(default=None, alias="reader")
    offset: int = Field(default=0, ge=0)
    generation: int = Field(default=0, ge=0, alias="gen")

    @field_validator("offset", "generation", mode="before")
    @classmethod
    def _null_as_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("owner", mode="before")
    @classmethod
    def _empty_owner_as_none(cls, value: Any) -> Any:
        return None if value == "" else value

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


Registry = dict[str, RegistryItem]


def serialize_registry(registry: Registry) -> bytes:
    doc = {path: item.to_json() for path, item in registry.items()}
    return json.dumps(doc, sort_keys=True, separators=(",", ":")).encode("utf-8")


def deserialize_registry(body: bytes, *, source: str = "registry") -> Registry:
    """Parse a registry document, raising ``RegistryCorruptError`` on structural problems."""
    try:
        doc = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise RegistryCorruptError(source, f"not valid JSON: {e}") from e
    if not isinstance(doc, dict):
        raise RegistryCorruptError(source, f"expected a JSON object, got {type(doc).__name__}")

    registry: Registry = {}
    for key, raw in doc.items():
        if not isinstance(raw, dict):
            raise RegistryCorruptError(source, f"entry '{key}' is not an object")
        if "file_path" not in raw:
            raw = {**raw, "file_path": key}
        try:
            item = RegistryItem.model_validate(raw)
        except ValidationError as e:
            raise RegistryCorruptError(source, f"entry '{key}': {e}") from e
        registry[item.path] = item
    return registry


class RegistryStore:
    """Loads and saves the registry object. Callers must hold the registry lease."""

    def __init__(self, store: BlobStore, path: str) -> None:
        self._store = store
        self.path = path

    def load(self) -> Registry:
        try:
            _info, body = self._store.get_range(self.path)
        except BlobNotFoundError as e:
            raise RegistryNotFoundError(self.path) from e
        return deserialize_registry(body, source=self.path)

    def save(self, registry: Registry) -> None:
        self._store.create_or_replace(self.path, serialize_registry(registry))

    def create(self, blobs: Iterable[BlobInfo], policy: str) -> Registry:
        """Create the registry for ``blobs``.

        ``resume`` treats existing content as already read; ``start_over``
        reads everything from the beginning.
        """
        registry: Registry = {}
        for blob in blobs:
            offset = blob.content_length if policy == "resume" else 0
            registry[blob.path] = RegistryItem(path=blob.path, etag=blob.etag, offset=offset)
        self.save(registry)
        logger.info(
            "Created registry %s with %d blob(s) (policy=%s)", self.path, len(registry), policy
        )
        return registry

    def load_or_create(self, blobs: Iterable[BlobInfo], policy: str) -> Registry:
        try:
            return self.load()
        except RegistryNotFoundError:
            return self.create(blobs, policy)
