"""
Phase Scheduler

Runs one load phase:

    IDLE -> SPAWNING -> RUNNING -> DRAINING -> SEALED

- Spawning: opens the phase in the collector and launches one task per
  simulated user, staggered by max(floor, 1000 // users) milliseconds
- Running: waits for every worker, bounded by the phase deadline
- Draining: on deadline (or run cancellation) cancels the phase token,
  grants in-flight calls one request-timeout of grace, then hard-cancels
- Sealed: closes the phase in the collector, which emits its report
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from surge.cancellation import CancellationToken
from surge.datastore import DataStore
from surge.events import EventBus, EventType
from surge.metrics import MetricsCollector, PhaseSnapshot
from surge.worker import Worker, WorkerReport
from surge.workload import Workload

logger = logging.getLogger("surge.scheduler")

DEFAULT_STAGGER_FLOOR_MS = 50
DEADLINE_REASON = "deadline"


class PhaseState(str, Enum):
    """Lifecycle of a single phase."""

    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    DRAINING = "draining"
    SEALED = "sealed"


def stagger_interval_ms(user_count: int, floor_ms: int = DEFAULT_STAGGER_FLOOR_MS) -> int:
    """Delay between successive worker launches."""
    if user_count <= 0:
        return floor_ms
    return max(floor_ms, 1000 // user_count)


@dataclass(frozen=True)
class PhasePlan:
    """What to run in one phase."""

    name: str
    user_count: int
    duration_seconds: float
    iterations_per_user: int


@dataclass
class PhaseOutcome:
    """Results of one phase run."""

    plan: PhasePlan
    state: PhaseState = PhaseState.IDLE
    launch_times: list[float] = field(default_factory=list)
    worker_reports: list[WorkerReport] = field(default_factory=list)
    worker_failures: dict[int, str] = field(default_factory=dict)
    deadline_hit: bool = False
    cancelled: bool = False
    hard_cancelled: int = 0
    started_at: float = 0.0
    sealed_at: float = 0.0
    snapshot: PhaseSnapshot | None = None

    @property
    def name(self) -> str:
        return self.plan.name

    @property
    def elapsed_seconds(self) -> float:
        return max(self.sealed_at - self.started_at, 0.0)


WorkerFactory = Callable[[str], Worker]


class PhaseScheduler:
    """
    Orchestrates the simulated users of one phase.

    Usage:
        scheduler = PhaseScheduler(collector, workload)
        outcome = await scheduler.run(PhasePlan("Phase 1 (20 users)", 20, 600, 10), run_token)
    """

    def __init__(
        self,
        collector: MetricsCollector,
        workload: Workload,
        *,
        datastore: DataStore | None = None,
        event_bus: EventBus | None = None,
        stagger_floor_ms: int = DEFAULT_STAGGER_FLOOR_MS,
        grace_seconds: float = 30.0,
        backoff_seconds: tuple[float, float] = (1.0, 2.0),
        worker_factory: WorkerFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            collector: Metrics sink shared by every phase of the run
            workload: Flow each simulated user repeats
            datastore: Cleanup target used by workers
            event_bus: Narration sink
            stagger_floor_ms: Minimum delay between worker launches
            grace_seconds: Extra time granted to in-flight calls after the
                deadline; normally the per-request timeout
            backoff_seconds: Range of the pause between iterations
            worker_factory: Builds a Worker for a phase name (tests)
            clock: Monotonic clock used for launch timestamps
        """
        self.collector = collector
        self.workload = workload
        self.datastore = datastore
        self.event_bus = event_bus
        self.stagger_floor_ms = stagger_floor_ms
        self.grace_seconds = grace_seconds
        self.backoff_seconds = backoff_seconds
        self._worker_factory = worker_factory or self._default_worker
        self._clock = clock
        self._state = PhaseState.IDLE

    @property
    def state(self) -> PhaseState:
        return self._state

    def _default_worker(self, phase: str) -> Worker:
        return Worker(
            self.workload,
            self.collector,
            phase,
            datastore=self.datastore,
            event_bus=self.event_bus,
            backoff_seconds=self.backoff_seconds,
        )

    def _transition(self, outcome: PhaseOutcome, state: PhaseState) -> None:
        logger.debug(f"[{outcome.name}] {self._state.value} -> {state.value}")
        self._state = state
        outcome.state = state

    async def run(self, plan: PhasePlan, run_token: CancellationToken) -> PhaseOutcome:
        """
        Run one phase to completion, deadline or cancellation.

        Args:
            plan: Phase name, users, duration and iteration budget
            run_token: Run-wide cancellation; the phase derives its own child

        Returns:
            PhaseOutcome, always sealed
        """
        outcome = PhaseOutcome(plan=plan)
        self._state = PhaseState.IDLE
        loop = asyncio.get_running_loop()

        # IDLE -> SPAWNING
        self.collector.start_phase(plan.name, plan.user_count)
        outcome.started_at = self._clock()
        phase_token = run_token.child(plan.name)
        deadline_handle = loop.call_later(
            max(plan.duration_seconds, 0.0), phase_token.cancel, DEADLINE_REASON
        )
        self._transition(outcome, PhaseState.SPAWNING)

        tasks: dict[int, asyncio.Task[WorkerReport | None]] = {}
        try:
            await self._spawn(plan, phase_token, outcome, tasks)

            # SPAWNING -> RUNNING
            self._transition(outcome, PhaseState.RUNNING)
            await self._await_workers(tasks, phase_token)

            # RUNNING -> DRAINING
            self._transition(outcome, PhaseState.DRAINING)
            await self._drain(plan, phase_token, outcome, tasks)

        finally:
            deadline_handle.cancel()
            leftovers = [t for t in tasks.values() if not t.done()]
            if leftovers:
                phase_token.cancel("aborted")
                for task in leftovers:
                    task.cancel()
                await asyncio.gather(*leftovers, return_exceptions=True)

            phase_token.detach()
            outcome.deadline_hit = phase_token.reason == DEADLINE_REASON
            outcome.cancelled = run_token.cancelled

            for task in tasks.values():
                if task.done() and not task.cancelled():
                    report = task.result()
                    if report is not None:
                        outcome.worker_reports.append(report)

            # DRAINING -> SEALED
            outcome.snapshot = self.collector.end_phase(plan.name)
            outcome.sealed_at = self._clock()
            self._transition(outcome, PhaseState.SEALED)

        return outcome

    async def _spawn(
        self,
        plan: PhasePlan,
        token: CancellationToken,
        outcome: PhaseOutcome,
        tasks: dict[int, asyncio.Task[WorkerReport | None]],
    ) -> None:
        stagger = stagger_interval_ms(plan.user_count, self.stagger_floor_ms) / 1000
        for user_id in range(1, plan.user_count + 1):
            if token.cancelled:
                logger.info(
                    f"[{plan.name}] Stopped spawning after {len(tasks)}/{plan.user_count} users"
                )
                return

            worker = self._worker_factory(plan.name)
            outcome.launch_times.append(self._clock())
            tasks[user_id] = asyncio.create_task(
                self._run_worker(worker, user_id, plan.iterations_per_user, token, outcome),
                name=f"{plan.name}-user-{user_id}",
            )

            if user_id < plan.user_count:
                await token.sleep(stagger)

    async def _run_worker(
        self,
        worker: Worker,
        user_id: int,
        iterations: int,
        token: CancellationToken,
        outcome: PhaseOutcome,
    ) -> WorkerReport | None:
        try:
            return await worker.run(user_id, iterations, token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[User {user_id}] Unexpected error: {e}")
            outcome.worker_failures[user_id] = str(e)
            if self.event_bus is not None:
                self.event_bus.emit_nowait(
                    EventType.WORKER_FAILED,
                    {"phase": outcome.name, "user_id": user_id, "error": str(e)},
                    source_id=f"user-{user_id}",
                )
            return None

    async def _await_workers(
        self,
        tasks: dict[int, asyncio.Task[WorkerReport | None]],
        token: CancellationToken,
    ) -> None:
        """Wait until every worker finished or the phase token fires."""
        pending = {t for t in tasks.values() if not t.done()}
        if not pending or token.cancelled:
            return

        waiter = asyncio.create_task(token.wait())
        try:
            while pending and not token.cancelled:
                await asyncio.wait(pending | {waiter}, return_when=asyncio.FIRST_COMPLETED)
                pending = {t for t in pending if not t.done()}
        finally:
            waiter.cancel()

    async def _drain(
        self,
        plan: PhasePlan,
        token: CancellationToken,
        outcome: PhaseOutcome,
        tasks: dict[int, asyncio.Task[WorkerReport | None]],
    ) -> None:
        pending = {t for t in tasks.values() if not t.done()}
        if not pending:
            return

        if token.reason == DEADLINE_REASON:
            logger.info(f"[{plan.name}] Phase time limit reached, stopping users...")
            if self.event_bus is not None:
                await self.event_bus.emit(
                    EventType.PHASE_DEADLINE,
                    {"phase": plan.name, "running_users": len(pending)},
                    source_id=plan.name,
                )

        # In-flight calls finish or hit their own timeout
        _, pending = await asyncio.wait(pending, timeout=self.grace_seconds)
        if pending:
            logger.warning(f"[{plan.name}] Cancelling {len(pending)} workers after grace period")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            outcome.hard_cancelled = len(pending)
