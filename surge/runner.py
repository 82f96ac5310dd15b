"""
Run Orchestrator

Sequences a load test:
- Purges leftover test data
- Runs each configured phase, one at a time, with a cool-down in between
- Rests, purges again and renders/persists the final report
- Handles SIGINT/SIGTERM by cancelling the run token; a cancelled run skips
  the remaining phases and reports whatever was collected
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from surge.cancellation import CancellationToken
from surge.datastore import DataStore
from surge.events import EventBus, EventType
from surge.metrics import MetricsCollector, RunSnapshot
from surge.report import ReportFormat, ReportGenerator
from surge.scheduler import DEFAULT_STAGGER_FLOOR_MS, PhaseOutcome, PhasePlan, PhaseScheduler
from surge.workload import Workload

logger = logging.getLogger("surge.runner")


@dataclass
class RunSettings:
    """Engine-level settings of one run."""

    phases: list[PhasePlan]
    phase_cooldown_seconds: float = 30.0
    rest_duration_seconds: float = 600.0
    request_timeout_seconds: float = 30.0
    stagger_floor_ms: int = DEFAULT_STAGGER_FLOOR_MS
    iteration_backoff_seconds: tuple[float, float] = (1.0, 2.0)
    report_dir: Path | str = "."
    report_format: ReportFormat = "markdown"
    save_report: bool = True
    purge_datastore: bool = True
    base_url: str | None = None

    @classmethod
    def from_config(cls, config: Any) -> RunSettings:
        """Build from a ``SurgeConfig``."""
        load = config.load_test
        return cls(
            phases=config.phase_plans(),
            phase_cooldown_seconds=load.phase_cooldown_seconds,
            rest_duration_seconds=load.rest_duration_minutes * 60,
            request_timeout_seconds=config.api.request_timeout_seconds,
            stagger_floor_ms=load.stagger_floor_ms,
            iteration_backoff_seconds=tuple(load.iteration_backoff_seconds),
            report_dir=config.report.output_dir,
            report_format=config.report.format,
            purge_datastore=config.datastore.enabled,
            base_url=config.api.base_url,
        )


@dataclass
class RunResult:
    """Results from a full run."""

    phases: list[PhaseOutcome]
    snapshot: RunSnapshot
    started_at: datetime
    ended_at: datetime
    cancelled: bool = False
    report_path: Path | None = None
    cancel_reason: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 2),
            "cancelled": self.cancelled,
            "cancel_reason": self.cancel_reason,
            "report_path": str(self.report_path) if self.report_path else None,
            "phases": [
                {
                    "name": p.name,
                    "state": p.state.value,
                    "users_launched": len(p.launch_times),
                    "deadline_hit": p.deadline_hit,
                    "worker_failures": len(p.worker_failures),
                    "hard_cancelled": p.hard_cancelled,
                }
                for p in self.phases
            ],
            "errors": self.errors,
        }


SchedulerFactory = Callable[[], PhaseScheduler]


class RunOrchestrator:
    """
    Runs all configured phases and produces the final report.

    Usage:
        orchestrator = RunOrchestrator(settings, collector, workload, datastore=store)
        result = await orchestrator.run()
    """

    def __init__(
        self,
        settings: RunSettings,
        collector: MetricsCollector,
        workload: Workload,
        *,
        datastore: DataStore | None = None,
        event_bus: EventBus | None = None,
        scheduler_factory: SchedulerFactory | None = None,
    ) -> None:
        self.settings = settings
        self.collector = collector
        self.workload = workload
        self.datastore = datastore
        self.event_bus = event_bus
        self._scheduler_factory = scheduler_factory or self._default_scheduler
        self.token: CancellationToken | None = None
        self._signals_installed: list[int] = []

    def _default_scheduler(self) -> PhaseScheduler:
        return PhaseScheduler(
            self.collector,
            self.workload,
            datastore=self.datastore,
            event_bus=self.event_bus,
            stagger_floor_ms=self.settings.stagger_floor_ms,
            grace_seconds=self.settings.request_timeout_seconds,
            backoff_seconds=self.settings.iteration_backoff_seconds,
        )

    async def _emit(self, event_type: EventType, payload: dict[str, Any] | None = None) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event_type, payload, source_id="run")

    async def run(self, token: CancellationToken | None = None) -> RunResult:
        """
        Execute every phase, then report.

        Args:
            token: Run-wide cancellation token; one is created if omitted

        Returns:
            RunResult with per-phase outcomes and the final snapshot
        """
        token = token or CancellationToken("run")
        self.token = token
        started_at = datetime.now(timezone.utc)
        outcomes: list[PhaseOutcome] = []
        errors: list[str] = []
        phases = self.settings.phases

        await self._emit(EventType.RUN_STARTED, {
            "base_url": self.settings.base_url,
            "workload": self.workload.name,
            "iterations_per_user": phases[0].iterations_per_user if phases else 0,
            "phase_count": len(phases),
        })

        await self._purge("initial", errors)

        for index, plan in enumerate(phases):
            if token.cancelled:
                break

            scheduler = self._scheduler_factory()
            outcome = await scheduler.run(plan, token)
            outcomes.append(outcome)

            if index < len(phases) - 1 and not token.cancelled:
                cooldown = self.settings.phase_cooldown_seconds
                await self._emit(EventType.PHASE_COOLDOWN, {"seconds": cooldown})
                await token.sleep(cooldown)

        if not token.cancelled and self.settings.rest_duration_seconds > 0:
            await self._emit(
                EventType.REST_STARTED,
                {"minutes": self.settings.rest_duration_seconds / 60},
            )
            await token.sleep(self.settings.rest_duration_seconds)

        if token.cancelled:
            logger.info(f"Run cancelled ({token.reason}), reporting partial data")
            await self._emit(EventType.RUN_CANCELLED, {"reason": token.reason})
        else:
            await self._purge("final", errors)

        snapshot = self.collector.snapshot()
        await self._emit(EventType.RUN_COMPLETED, {
            "snapshot": snapshot,
            "cancelled": token.cancelled,
        })

        report_path = None
        if self.settings.save_report:
            report_path = ReportGenerator(snapshot).save(
                self.settings.report_dir, self.settings.report_format
            )
            await self._emit(EventType.REPORT_SAVED, {"path": str(report_path)})

        return RunResult(
            phases=outcomes,
            snapshot=snapshot,
            started_at=started_at,
            ended_at=datetime.now(timezone.utc),
            cancelled=token.cancelled,
            report_path=report_path,
            cancel_reason=token.reason,
            errors=errors,
        )

    async def _purge(self, stage: str, errors: list[str]) -> None:
        if self.datastore is None or not self.settings.purge_datastore:
            return
        logger.info(f"Cleaning up test data ({stage})...")
        try:
            await self.datastore.purge()
        except Exception as e:
            logger.warning(f"{stage.capitalize()} cleanup failed: {e}")
            errors.append(f"{stage} cleanup: {e}")

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the running test."""
        if self.token is not None:
            self.token.cancel(reason)

    def install_signal_handlers(self, token: CancellationToken) -> None:
        """
        Cancel ``token`` on SIGINT/SIGTERM.

        The first signal requests a graceful stop; handlers are then removed
        so a second Ctrl+C interrupts immediately.
        """
        loop = asyncio.get_running_loop()

        def handler(signum: int) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            token.cancel("interrupted")
            self.remove_signal_handlers()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, handler, signum)
            except (NotImplementedError, RuntimeError):
                # Signal handling may not work in all contexts
                continue
            self._signals_installed.append(signum)

    def remove_signal_handlers(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for signum in self._signals_installed:
            loop.remove_signal_handler(signum)
        self._signals_installed.clear()
