"""
Shared fixtures for surge tests.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

import pytest

from surge.events import EventBus
from surge.metrics import MetricsCollector
from surge.workload import Step, StepContext, StepResult, Workload


class FakeClock:
    """Deterministic UTC clock advancing a fixed step per call."""

    def __init__(self, step_seconds: float = 1.0) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.step = timedelta(seconds=step_seconds)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


class ScriptedWorkload(Workload):
    """Workload built from plain async step functions."""

    name = "scripted"
    description = "Test workload"

    def __init__(self, steps: Sequence[Step]) -> None:
        self._steps = list(steps)
        self.begun = 0
        self.ended = 0
        self.closed = False

    def steps(self) -> Sequence[Step]:
        return self._steps

    def new_identity(self, user_id: int, iteration: int) -> str:
        return f"u{user_id}.i{iteration}"

    async def begin_iteration(self, context: StepContext) -> None:
        self.begun += 1

    async def end_iteration(self, context: StepContext) -> None:
        self.ended += 1

    async def close(self) -> None:
        self.closed = True


def recording_step(
    endpoint: str = "/api/v1/forms",
    method: str = "GET",
    latency_ms: int = 100,
    success: bool = True,
) -> Step:
    """Step that records one sample and reports the given outcome."""

    async def run(context: StepContext) -> StepResult:
        context.recorder.record(
            endpoint,
            method,
            200 if success else 500,
            latency_ms,
            success,
            None if success else "HTTP 500 Internal Server Error",
        )
        return StepResult(success)

    return Step(f"{method} {endpoint}", run)


@pytest.fixture(autouse=True)
def quiet_logs() -> None:
    logging.getLogger("surge").setLevel(logging.WARNING)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def collector(event_bus: EventBus) -> MetricsCollector:
    return MetricsCollector(event_bus=event_bus)


@pytest.fixture
def make_workload() -> Callable[..., ScriptedWorkload]:
    def factory(*steps: Step) -> ScriptedWorkload:
        return ScriptedWorkload(steps)

    return factory


@pytest.fixture
def make_step() -> Callable[..., Step]:
    return recording_step
