"""
Shared test fixtures for DualStore.
"""

import tempfile
from typing import Any

import pytest

from migration.dualstore_server.stores import InMemoryRecordStore, StorePair


class FakeClock:
    """Controllable Unix-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeMonotonic:
    """Controllable monotonic clock in seconds."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAlertSink:
    """AlertSink that keeps every alert for assertions."""

    def __init__(self) -> None:
        self.alerts: list[tuple[str, dict[str, Any]]] = []

    async def alert(self, event: str, details: dict[str, Any]) -> None:
        self.alerts.append((event, details))

    def events(self) -> list[str]:
        return [event for event, _ in self.alerts]


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def alert_sink():
    return RecordingAlertSink()


@pytest.fixture
def legacy():
    return InMemoryRecordStore("legacy")


@pytest.fixture
def target():
    return InMemoryRecordStore("target")


@pytest.fixture
def stores(legacy, target):
    return StorePair(legacy=legacy, target=target)
