"""
Console narration.

Subscribes to the run's EventBus and prints progress with rich. The load
engine never prints; everything user-facing during a run comes from here.
"""

from __future__ import annotations

from datetime import timezone
from typing import Callable

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule

from surge.events import Event, EventBus, EventType
from surge.report import ReportGenerator, phase_report_lines


class ConsoleReporter:
    """
    Renders run events to a rich Console.

    Usage:
        reporter = ConsoleReporter(console)
        reporter.attach(bus)
    """

    def __init__(self, console: Console | None = None, verbose: bool = False) -> None:
        self.console = console or Console()
        self.verbose = verbose
        self._unsubscribers: list[Callable[[], None]] = []

    def attach(self, bus: EventBus) -> None:
        handlers = {
            EventType.RUN_STARTED: self.on_run_started,
            EventType.PHASE_STARTED: self.on_phase_started,
            EventType.PHASE_DEADLINE: self.on_phase_deadline,
            EventType.PHASE_COMPLETED: self.on_phase_completed,
            EventType.PHASE_COOLDOWN: self.on_phase_cooldown,
            EventType.REST_STARTED: self.on_rest_started,
            EventType.ITERATION_STARTED: self.on_iteration_started,
            EventType.ITERATION_FAILED: self.on_iteration_failed,
            EventType.ITERATION_CANCELLED: self.on_iteration_cancelled,
            EventType.CLEANUP_FAILED: self.on_cleanup_failed,
            EventType.WORKER_FAILED: self.on_worker_failed,
            EventType.RUN_CANCELLED: self.on_run_cancelled,
            EventType.RUN_COMPLETED: self.on_run_completed,
            EventType.REPORT_SAVED: self.on_report_saved,
        }
        for event_type, handler in handlers.items():
            self._unsubscribers.append(bus.subscribe(event_type, handler))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_run_started(self, event: Event) -> None:
        p = event.payload
        self.console.print(Panel(
            f"[bold]API Base URL:[/bold] {p.get('base_url')}\n"
            f"[bold]Workload:[/bold] {p.get('workload')}\n"
            f"[bold]Iterations per user per phase:[/bold] {p.get('iterations_per_user')}\n"
            f"[bold]Number of phases:[/bold] {p.get('phase_count')}",
            title="API Load Test",
        ))

    def on_phase_started(self, event: Event) -> None:
        p = event.payload
        self.console.print()
        self.console.print(Rule(
            f"[{_clock(event)}] STARTING PHASE: {p['phase']} "
            f"with {p['user_count']} concurrent users",
            characters="=",
        ))

    def on_phase_deadline(self, event: Event) -> None:
        self.console.print(
            f"\n[yellow][{escape(event.payload['phase'])}] Phase time limit reached, stopping users...[/yellow]"
        )

    def on_phase_completed(self, event: Event) -> None:
        p = event.payload
        lines = phase_report_lines(p["snapshot"], p["normalizer"])
        self.console.print()
        self.console.print(Rule(characters="-"))
        for line in lines:
            self.console.print(line, highlight=False, markup=False)
        self.console.print(Rule(characters="-"))

    def on_phase_cooldown(self, event: Event) -> None:
        self.console.print(
            f"\nWaiting {event.payload['seconds']:.0f} seconds before next phase...\n"
        )

    def on_rest_started(self, event: Event) -> None:
        self.console.print(f"\nResting for {event.payload['minutes']:g} minutes...")

    def on_iteration_started(self, event: Event) -> None:
        if not self.verbose:
            return
        p = event.payload
        self.console.print(
            f"  [User {p['user_id']}] Starting iteration {p['iteration']}/{p['iterations']}",
            highlight=False,
        )

    def on_iteration_failed(self, event: Event) -> None:
        p = event.payload
        self.console.print(
            f"  [red][User {p['user_id']}] Iteration {p['iteration']} failed: {escape(p['error'])}[/red]",
            highlight=False,
        )

    def on_iteration_cancelled(self, event: Event) -> None:
        if self.verbose:
            self.console.print(f"  [User {event.payload['user_id']}] Iteration cancelled")

    def on_cleanup_failed(self, event: Event) -> None:
        p = event.payload
        self.console.print(
            f"  [yellow][User {p['user_id']}] Cleanup failed: {escape(p['error'])}[/yellow]",
            highlight=False,
        )

    def on_worker_failed(self, event: Event) -> None:
        p = event.payload
        self.console.print(
            f"  [red][User {p['user_id']}] Unexpected error: {escape(p['error'])}[/red]",
            highlight=False,
        )

    def on_run_cancelled(self, event: Event) -> None:
        self.console.print(
            "\n[yellow]Cancellation requested, stopping gracefully...[/yellow]"
        )

    def on_run_completed(self, event: Event) -> None:
        self.console.print()
        ReportGenerator(event.payload["snapshot"]).render_console(self.console)

    def on_report_saved(self, event: Event) -> None:
        self.console.print(f"\n[green]Detailed report saved to: {event.payload['path']}[/green]")


def _clock(event: Event) -> str:
    return event.timestamp.astimezone(timezone.utc).strftime("%H:%M:%S")
