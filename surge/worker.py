"""
Simulated user loop.

A Worker repeats its workload's steps ``iteration_budget`` times. Every
failure inside an iteration is contained: it is logged with the user id and
iteration index, the iteration's data is cleaned up, and the next iteration
starts after a short randomised backoff. Only cancellation ends the loop
early, and it is checked at the top of each iteration and between steps.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass

from surge.cancellation import CancellationToken
from surge.datastore import DataStore, NullDataStore
from surge.events import EventBus, EventType
from surge.metrics import MetricsCollector
from surge.workload import StepContext, Workload

logger = logging.getLogger("surge.worker")


@dataclass
class WorkerReport:
    """What one simulated user did during a phase."""

    user_id: int
    iterations_started: int = 0
    iterations_completed: int = 0
    iterations_failed: int = 0
    steps_failed: int = 0
    cleanup_failures: int = 0
    cancelled: bool = False


class Worker:
    """
    One simulated user.

    Usage:
        worker = Worker(workload, collector, phase="Phase 1 (20 users)")
        report = await worker.run(user_id=1, iteration_budget=10, token=phase_token)
    """

    def __init__(
        self,
        workload: Workload,
        collector: MetricsCollector,
        phase: str,
        *,
        datastore: DataStore | None = None,
        event_bus: EventBus | None = None,
        backoff_seconds: tuple[float, float] = (1.0, 2.0),
        rng: random.Random | None = None,
    ) -> None:
        self.workload = workload
        self.collector = collector
        self.phase = phase
        self.datastore = datastore or NullDataStore()
        self.event_bus = event_bus
        self.backoff_seconds = backoff_seconds
        self._rng = rng or random.Random()

    async def run(
        self,
        user_id: int,
        iteration_budget: int,
        token: CancellationToken,
    ) -> WorkerReport:
        """
        Execute up to ``iteration_budget`` iterations.

        Returns:
            WorkerReport; ``cancelled`` is set when the token stopped the loop
        """
        report = WorkerReport(user_id=user_id)
        recorder = self.collector.recorder(self.phase)

        for iteration in range(iteration_budget):
            if token.cancelled:
                report.cancelled = True
                break

            identity = self.workload.new_identity(user_id, iteration)
            context = StepContext(
                phase=self.phase,
                user_id=user_id,
                iteration=iteration,
                identity=identity,
                recorder=recorder,
                token=token,
            )
            report.iterations_started += 1
            self._emit(
                EventType.ITERATION_STARTED,
                user_id,
                iteration=iteration + 1,
                iterations=iteration_budget,
            )

            completed = await self._run_iteration(context, report)
            if completed:
                report.iterations_completed += 1

            await self._cleanup(context, report)

            if token.cancelled:
                report.cancelled = True
                self._emit(EventType.ITERATION_CANCELLED, user_id, iteration=iteration + 1)
                break

            if iteration < iteration_budget - 1:
                low, high = self.backoff_seconds
                if await token.sleep(self._rng.uniform(low, high)):
                    report.cancelled = True
                    break

        return report

    async def _run_iteration(self, context: StepContext, report: WorkerReport) -> bool:
        """Run the steps of one iteration. Returns False if it ended early."""
        iteration_no = context.iteration + 1
        try:
            await self.workload.begin_iteration(context)
            for step in self.workload.steps():
                if context.token.cancelled:
                    return False

                result = await step.run(context)
                if result.success:
                    continue

                report.steps_failed += 1
                logger.debug(
                    f"[User {context.user_id}] Step {step.name} failed: {result.detail}"
                )
                if step.required:
                    self._fail_iteration(
                        context, report, f"{step.name} failed: {result.detail or 'no detail'}"
                    )
                    return False
            return True

        except Exception as e:
            self._fail_iteration(context, report, str(e) or e.__class__.__name__)
            return False

        finally:
            try:
                await self.workload.end_iteration(context)
            except Exception as e:
                logger.warning(
                    f"[User {context.user_id}] Iteration {iteration_no} teardown failed: {e}"
                )

    def _fail_iteration(self, context: StepContext, report: WorkerReport, message: str) -> None:
        iteration_no = context.iteration + 1
        report.iterations_failed += 1
        logger.warning(f"[User {context.user_id}] Iteration {iteration_no} failed: {message}")
        self._emit(
            EventType.ITERATION_FAILED,
            context.user_id,
            iteration=iteration_no,
            error=message,
        )

    async def _cleanup(self, context: StepContext, report: WorkerReport) -> None:
        try:
            await self.datastore.cleanup(context.identity)
        except Exception as e:
            report.cleanup_failures += 1
            logger.warning(f"[User {context.user_id}] Cleanup failed: {e}")
            self._emit(
                EventType.CLEANUP_FAILED,
                context.user_id,
                iteration=context.iteration + 1,
                error=str(e),
            )

    def _emit(self, event_type: EventType, user_id: int, **payload: object) -> None:
        if self.event_bus is None:
            return
        self.event_bus.emit_nowait(
            event_type,
            {"phase": self.phase, "user_id": user_id, **payload},
            source_id=f"user-{user_id}",
        )
