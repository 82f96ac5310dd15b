"""
Tests for PhaseScheduler spawning, deadlines and sealing.
"""

from __future__ import annotations

import asyncio
import time

import pytest

from surge.cancellation import CancellationToken
from surge.events import EventBus, EventType
from surge.metrics import MetricsCollector
from surge.scheduler import PhasePlan, PhaseScheduler, PhaseState, stagger_interval_ms
from surge.worker import Worker
from surge.workload import Step, StepContext, StepResult


def make_scheduler(collector, workload, **kwargs) -> PhaseScheduler:
    kwargs.setdefault("backoff_seconds", (0.0, 0.0))
    kwargs.setdefault("grace_seconds", 1.0)
    return PhaseScheduler(collector, workload, **kwargs)


# ============================================================================
# Stagger
# ============================================================================


class TestStaggerInterval:
    """Test launch spacing."""

    @pytest.mark.parametrize(
        "users, expected",
        [(1, 1000), (2, 500), (5, 200), (20, 50), (50, 50), (300, 50), (3, 333)],
    )
    def test_interval(self, users: int, expected: int) -> None:
        assert stagger_interval_ms(users) == expected

    def test_custom_floor(self) -> None:
        assert stagger_interval_ms(300, floor_ms=10) == 10
        assert stagger_interval_ms(300, floor_ms=0) == 3

    @pytest.mark.asyncio
    async def test_launch_spacing(self, make_workload, make_step, collector) -> None:
        """Test five users are launched at least 200ms apart."""
        scheduler = make_scheduler(collector, make_workload(make_step()))
        plan = PhasePlan("Phase 1 (5 users)", 5, duration_seconds=10, iterations_per_user=1)

        outcome = await scheduler.run(plan, CancellationToken())

        times = outcome.launch_times
        assert len(times) == 5
        gaps = [b - a for a, b in zip(times, times[1:])]
        assert all(gap >= 0.2 - 0.02 for gap in gaps)


# ============================================================================
# Lifecycle
# ============================================================================


class TestPhaseScheduler:
    """Test PhaseScheduler.run."""

    @pytest.mark.asyncio
    async def test_runs_to_completion(self, make_workload, make_step, event_bus: EventBus) -> None:
        """Test a phase whose workers finish before the deadline."""
        collector = MetricsCollector(event_bus=event_bus)
        workload = make_workload(make_step())
        scheduler = make_scheduler(collector, workload, event_bus=event_bus)
        plan = PhasePlan("Phase 1 (2 users)", 2, duration_seconds=30, iterations_per_user=3)

        outcome = await scheduler.run(plan, CancellationToken())

        assert outcome.state == PhaseState.SEALED
        assert scheduler.state == PhaseState.SEALED
        assert not outcome.deadline_hit
        assert not outcome.cancelled
        assert len(outcome.worker_reports) == 2
        assert all(r.iterations_completed == 3 for r in outcome.worker_reports)
        assert outcome.snapshot is not None
        assert outcome.snapshot.sealed
        assert outcome.snapshot.total_requests == 6
        assert outcome.snapshot.user_count == 2

        types = [e.event_type for e in event_bus.history()]
        assert types.index(EventType.PHASE_STARTED) < types.index(EventType.PHASE_COMPLETED)

    @pytest.mark.asyncio
    async def test_deadline_stops_workers(self, make_workload, event_bus: EventBus) -> None:
        """Test the deadline ends the phase and no sample lands after sealing."""

        async def slow(context: StepContext) -> StepResult:
            await context.token.sleep(5)
            context.recorder.record("/api/v1/forms", "GET", 200, 5, True)
            return StepResult.ok()

        collector = MetricsCollector(event_bus=event_bus)
        scheduler = make_scheduler(collector, make_workload(Step("slow", slow)), event_bus=event_bus)
        plan = PhasePlan("Phase 1 (3 users)", 3, duration_seconds=0.3, iterations_per_user=100)

        started = time.monotonic()
        outcome = await scheduler.run(plan, CancellationToken())
        elapsed = time.monotonic() - started

        assert outcome.deadline_hit
        assert outcome.hard_cancelled == 0
        assert elapsed < 0.3 + scheduler.grace_seconds + 0.5
        assert all(r.cancelled for r in outcome.worker_reports)

        sealed = outcome.snapshot
        assert sealed is not None
        assert all(s.timestamp <= sealed.end_time for s in sealed.samples)

        # Late writes are impossible once every worker has returned
        phase = collector.get_phase(plan.name)
        assert phase.total_requests == sealed.total_requests

    @pytest.mark.asyncio
    async def test_hard_cancel_after_grace(self, make_workload, event_bus: EventBus) -> None:
        """Test workers ignoring the token are cancelled after the grace period."""

        async def stubborn(context: StepContext) -> StepResult:
            await asyncio.sleep(30)
            return StepResult.ok()

        collector = MetricsCollector()
        scheduler = make_scheduler(
            collector,
            make_workload(Step("stubborn", stubborn)),
            event_bus=event_bus,
            grace_seconds=0.1,
        )
        plan = PhasePlan("Phase 1 (2 users)", 2, duration_seconds=0.6, iterations_per_user=1)

        started = time.monotonic()
        outcome = await scheduler.run(plan, CancellationToken())

        assert time.monotonic() - started < 3
        assert outcome.deadline_hit
        assert outcome.hard_cancelled == 2
        assert event_bus.history(EventType.PHASE_DEADLINE)[0].payload["running_users"] == 2
        assert outcome.state == PhaseState.SEALED

    @pytest.mark.asyncio
    async def test_run_cancellation_stops_spawning(self, make_workload, make_step) -> None:
        """Test cancelling the run token mid-spawn launches no more users."""
        collector = MetricsCollector()
        run_token = CancellationToken("run")
        scheduler = make_scheduler(collector, make_workload(make_step()))
        plan = PhasePlan("Phase 1 (2 users)", 2, duration_seconds=30, iterations_per_user=1)

        # 2 users are 500ms apart; cancel in between
        asyncio.get_running_loop().call_later(0.1, run_token.cancel, "interrupted")
        outcome = await scheduler.run(plan, run_token)

        assert outcome.cancelled
        assert not outcome.deadline_hit
        assert len(outcome.launch_times) == 1
        assert outcome.state == PhaseState.SEALED

    @pytest.mark.asyncio
    async def test_worker_crash_contained(self, make_workload, make_step, event_bus: EventBus) -> None:
        """Test an escaping worker error is logged and other workers continue."""

        class ExplodingWorker(Worker):
            async def run(self, user_id, iteration_budget, token):
                if user_id == 1:
                    raise RuntimeError("boom")
                return await super().run(user_id, iteration_budget, token)

        collector = MetricsCollector()
        workload = make_workload(make_step())

        scheduler = make_scheduler(
            collector,
            workload,
            event_bus=event_bus,
            worker_factory=lambda phase: ExplodingWorker(
                workload, collector, phase, backoff_seconds=(0.0, 0.0)
            ),
        )
        plan = PhasePlan("Phase 1 (2 users)", 2, duration_seconds=30, iterations_per_user=2)

        outcome = await scheduler.run(plan, CancellationToken())

        assert outcome.worker_failures == {1: "boom"}
        assert len(outcome.worker_reports) == 1
        assert outcome.snapshot.total_requests == 2
        assert event_bus.history(EventType.WORKER_FAILED)[0].payload["user_id"] == 1

    @pytest.mark.asyncio
    async def test_phase_deadline_does_not_cancel_run(self, make_workload, make_step) -> None:
        collector = MetricsCollector()
        run_token = CancellationToken("run")

        async def wait(context: StepContext) -> StepResult:
            await context.token.sleep(5)
            return StepResult.ok()

        scheduler = make_scheduler(collector, make_workload(Step("wait", wait)))
        await scheduler.run(PhasePlan("Phase 1 (1 users)", 1, 0.1, 1), run_token)

        assert not run_token.cancelled
