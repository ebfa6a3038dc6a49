"""Shared test fixtures."""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable

import pytest

from taskweave.config import EngineConfig
from taskweave.core.clock import ManualClock
from taskweave.core.engine import TaskEngine
from taskweave.core.events import EventBus
from taskweave.storage.memory import InMemoryTaskStore


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture()
def engine(clock: ManualClock, event_bus: EventBus) -> TaskEngine:
    """An engine on a manual clock, with no jitter, driven by ``tick()``."""
    config = EngineConfig(jitter_ratio=0.0, tick_interval_seconds=0.01)
    return TaskEngine(config=config, clock=clock, event_bus=event_bus, rng=random.Random(7))


@pytest.fixture()
def pump(engine: TaskEngine, clock: ManualClock) -> Callable[..., Awaitable[int]]:
    """Tick and drain until nothing is pending, jumping the clock past retry delays.

    Returns the number of attempts dispatched.
    """

    async def _pump(max_rounds: int = 100, step_seconds: float = 3600.0) -> int:
        dispatched = 0
        for _ in range(max_rounds):
            ids = engine.tick()
            dispatched += len(ids)
            await engine.drain()
            if ids:
                continue
            if engine.get_metrics().pending_tasks == 0:
                break
            clock.advance(step_seconds)
        return dispatched

    return _pump
