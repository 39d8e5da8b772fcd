"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from observatory.events.bus import BroadcastBus
from observatory.health.models import HttpProbe, TargetDescriptor
from observatory.health.store import ObservationStore


@pytest.fixture
def store(tmp_path: Path):
    s = ObservationStore(db_path=tmp_path / "test_monitoring.db")
    yield s
    s.close()


@pytest.fixture
def bus() -> BroadcastBus:
    return BroadcastBus(capacity=16)


@pytest.fixture
def http_target() -> TargetDescriptor:
    return TargetDescriptor(
        id="web", name="Web", interval=5, retries=2, timeout=5,
        probe=HttpProbe(url="https://ok.example"),
    )
