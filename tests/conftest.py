"""Shared test fixtures for blobtail tests."""

from __future__ import annotations

from typing import Any

import pytest

from blobtail.config import BlobTailConfig
from blobtail.storage import MemoryBlobStore


class FakeClock:
    """Manually advanced monotonic clock for lease expiry."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink:
    def __init__(self) -> None:
        self.records: list[bytes] = []

    def emit(self, record: bytes) -> None:
        self.records.append(record)


class FailingSink:
    """Accepts ``limit`` records, then raises on every emit."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.records: list[bytes] = []

    def emit(self, record: bytes) -> None:
        if len(self.records) >= self.limit:
            raise RuntimeError("downstream unavailable")
        self.records.append(record)


def make_config(**overrides: Any) -> BlobTailConfig:
    """Config tuned for tests: no idle wait, no retry sleep."""
    values: dict[str, Any] = {
        "storage_uri": "memory://test",
        "interval": 0,
        "lease_retry_interval_s": 0,
        "lease_retry_count": 3,
        "registry_create_policy": "start_over",
    }
    values.update(overrides)
    return BlobTailConfig(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryBlobStore:
    return MemoryBlobStore(clock=clock)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    return sleeps.append
