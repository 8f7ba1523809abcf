"""Configuration for blobtail readers."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from blobtail.errors import ConfigError

REGISTRY_CREATE_POLICIES = ("resume", "start_over")
JSON_SPLIT_POLICIES = ("do_not_break", "with_head_tail", "without_head_tail")

INFINITE_LEASE = -1
MIN_LEASE_DURATION_S = 15
MAX_LEASE_DURATION_S = 60

DEFAULT_MAX_BUFFER_SIZE = 4 * 1024 * 1024
MAX_BUFFER_SIZE_LIMIT = 64 * 1024 * 1024


@dataclass
class BlobTailConfig:
    """Configuration for a blobtail reader."""

    storage_uri: str | None = None
    container: str | None = None
    storage_account_name: str | None = None
    storage_access_key: str | None = None
    endpoint: str = "core.windows.net"
    s3_region: str | None = None
    s3_endpoint_url: str | None = None
    s3_request_timeout_s: float = 10.0
    registry_path: str = "data/registry"
    registry_lease_duration: int = 15
    lease_retry_count: int = 60
    lease_retry_interval_s: float = 1.0
    interval: float = 30.0
    registry_create_policy: str = "resume"
    file_head_bytes: int = 0
    file_tail_bytes: int = 0
    json_split_policy: str = "do_not_break"
    json_records: bool = True
    split_batch_count: int = 10
    blob_list_page_size: int = 100
    max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE
    reader_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        duration = self.registry_lease_duration
        if duration != INFINITE_LEASE and not (
            MIN_LEASE_DURATION_S <= duration <= MAX_LEASE_DURATION_S
        ):
            raise ConfigError(
                "registry_lease_duration",
                f"must be {INFINITE_LEASE} or between {MIN_LEASE_DURATION_S} "
                f"and {MAX_LEASE_DURATION_S}, got {duration}",
            )
        if self.registry_create_policy not in REGISTRY_CREATE_POLICIES:
            raise ConfigError(
                "registry_create_policy",
                f"expected one of {REGISTRY_CREATE_POLICIES}, got '{self.registry_create_policy}'",
            )
        if self.json_split_policy not in JSON_SPLIT_POLICIES:
            raise ConfigError(
                "json_split_policy",
                f"expected one of {JSON_SPLIT_POLICIES}, got '{self.json_split_policy}'",
            )
        if self.file_head_bytes < 0:
            raise ConfigError("file_head_bytes", "must not be negative")
        if self.file_tail_bytes < 0:
            raise ConfigError("file_tail_bytes", "must not be negative")
        if not (0 < self.max_buffer_size <= MAX_BUFFER_SIZE_LIMIT):
            raise ConfigError(
                "max_buffer_size", f"must be in (0, {MAX_BUFFER_SIZE_LIMIT}], got {self.max_buffer_size}"
            )
        if self.interval < 0:
            raise ConfigError("interval", "must not be negative")
        if self.lease_retry_count < 0:
            raise ConfigError("lease_retry_count", "must not be negative")
        if not self.registry_path:
            raise ConfigError("registry_path", "must not be empty")

        # Out-of-range page and batch sizes fall back to defaults rather than failing.
        if self.blob_list_page_size <= 0:
            self.blob_list_page_size = 100
        if self.split_batch_count <= 0:
            self.split_batch_count = 1

    @property
    def lock_path(self) -> str:
        return f"{self.registry_path}.lock"

    @property
    def splits_json(self) -> bool:
        return self.json_records and self.json_split_policy != "do_not_break"

    def merged(self, **overrides: Any) -> BlobTailConfig:
        """Return a copy with non-None overrides applied (and re-validated)."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.update({k: v for k, v in overrides.items() if v is not None})
        return BlobTailConfig(**data)


def _from_mapping(raw: dict[str, Any]) -> BlobTailConfig:
    known = {f.name for f in fields(BlobTailConfig)}
    kwargs = {k: v for k, v in raw.items() if k in known and k != "extra"}
    extra = {k: v for k, v in raw.items() if k not in known}
    return BlobTailConfig(**kwargs, extra=extra)


def load_config(path: str | Path) -> BlobTailConfig:
    """Load configuration from a YAML or JSON file."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError("config", f"cannot read '{p}': {e}") from e

    try:
        if p.suffix.lower() == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError("config", f"cannot parse '{p}': {e}") from e
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("config", f"'{p}' must contain a mapping at top level")
    return _from_mapping(raw)


_ENV_FIELDS: dict[str, type] = {
    "storage_uri": str,
    "container": str,
    "storage_account_name": str,
    "storage_access_key": str,
    "s3_region": str,
    "s3_endpoint_url": str,
    "registry_path": str,
    "registry_lease_duration": int,
    "interval": float,
    "registry_create_policy": str,
    "file_head_bytes": int,
    "file_tail_bytes": int,
    "json_split_policy": str,
    "split_batch_count": int,
    "max_buffer_size": int,
    "reader_id": str,
}


def config_from_env(base: BlobTailConfig | None = None) -> BlobTailConfig:
    """Apply ``BLOBTAIL_*`` environment variables on top of ``base``."""
    base = base or BlobTailConfig()
    overrides: dict[str, Any] = {}
    for name, cast in _ENV_FIELDS.items():
        value = os.getenv(f"BLOBTAIL_{name.upper()}")
        if value is None or value == "":
            continue
        try:
            overrides[name] = cast(value)
        except ValueError as e:
            raise ConfigError(name, f"cannot parse environment value '{value}'") from e
    return base.merged(**overrides)
