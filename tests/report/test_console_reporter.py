"""
Tests for console narration.
"""

from __future__ import annotations

from io import StringIO

import pytest
from rich.console import Console

from surge.console import ConsoleReporter
from surge.events import EventBus, EventType
from surge.metrics import MetricsCollector


@pytest.fixture
def output() -> StringIO:
    return StringIO()


@pytest.fixture
def reporter(output: StringIO, event_bus: EventBus) -> ConsoleReporter:
    reporter = ConsoleReporter(Console(file=output, width=120), verbose=True)
    reporter.attach(event_bus)
    return reporter


class TestConsoleReporter:
    """Test event rendering."""

    def test_phase_report_printed(self, reporter, output: StringIO, event_bus: EventBus) -> None:
        collector = MetricsCollector(event_bus=event_bus)
        collector.start_phase("Phase 1 (20 users)", 20)
        collector.record_request("Phase 1 (20 users)", "/api/v1/forms", "GET", 200, 90, True)
        collector.end_phase("Phase 1 (20 users)")

        text = output.getvalue()
        assert "STARTING PHASE: Phase 1 (20 users)" in text
        assert "PHASE COMPLETED: Phase 1 (20 users)" in text
        assert "GET /api/v1/forms: 1 requests" in text

    def test_iteration_events(self, reporter, output: StringIO, event_bus: EventBus) -> None:
        """Test error text with markup characters is printed verbatim."""
        event_bus.emit_nowait(
            EventType.ITERATION_STARTED, {"user_id": 3, "iteration": 1, "iterations": 10}
        )
        event_bus.emit_nowait(
            EventType.ITERATION_FAILED,
            {"user_id": 3, "iteration": 1, "error": "HTTP 400: [bold]bad[/bold]"},
        )

        text = output.getvalue()
        assert "[User 3] Starting iteration 1/10" in text
        assert "Iteration 1 failed: HTTP 400: [bold]bad[/bold]" in text

    def test_quiet_mode_skips_iteration_starts(self, output: StringIO, event_bus: EventBus) -> None:
        reporter = ConsoleReporter(Console(file=output, width=120))
        reporter.attach(event_bus)
        event_bus.emit_nowait(
            EventType.ITERATION_STARTED, {"user_id": 1, "iteration": 1, "iterations": 2}
        )
        assert output.getvalue() == ""

    def test_run_completed_renders_summary(self, reporter, output: StringIO, event_bus: EventBus) -> None:
        event_bus.emit_nowait(EventType.RUN_COMPLETED, {"snapshot": MetricsCollector().snapshot()})
        assert "Final Load Test Report" in output.getvalue()

    def test_detach(self, reporter, output: StringIO, event_bus: EventBus) -> None:
        reporter.detach()
        event_bus.emit_nowait(EventType.REPORT_SAVED, {"path": "x.md"})
        assert output.getvalue() == ""
