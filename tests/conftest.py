"""Shared test fixtures."""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest

from task_router.config import QueueSettings, Settings
from task_router.routing.admission_queue import AdmissionQueue
from task_router.routing.backend.simulated import SimulatedBackend
from task_router.routing.models import Backend
from task_router.routing.router import TaskRouter, build_router
from task_router.storage.snapshots import MemorySnapshotStore, SnapshotStores


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class SleepRecorder:
    """Async sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def stores() -> SnapshotStores:
    return SnapshotStores.in_memory()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(state_dir=tmp_path / "state", state_backend="memory")


@pytest.fixture()
def adapters() -> dict[Backend, SimulatedBackend]:
    return {backend: SimulatedBackend(backend) for backend in Backend}


@pytest.fixture()
def router(settings, adapters, stores, clock) -> TaskRouter:
    return build_router(
        settings,
        adapters,
        stores=stores,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture()
def queue_factory(clock):
    def _build(
        settings: QueueSettings | None = None,
        *,
        queue_store: MemorySnapshotStore | None = None,
        dead_letter_store: MemorySnapshotStore | None = None,
    ) -> AdmissionQueue:
        return AdmissionQueue(
            settings=settings or QueueSettings(),
            queue_store=queue_store or MemorySnapshotStore(),
            dead_letter_store=dead_letter_store or MemorySnapshotStore(),
            clock=clock,
            rng=random.Random(3),
        )

    return _build
