"""
Report Generation

Pure rendering of a RunSnapshot:
- Console summary (overall totals, per-phase lines by start time)
- Per-phase completion report
- Durable Markdown or JSON document with phase tables and error summary

Nothing here touches the collector; the same snapshot always renders the
same output.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

from rich.console import Console
from rich.table import Table

from surge.metrics import EndpointNormalizer, PhaseSnapshot, RunSnapshot

logger = logging.getLogger("surge.report")

ReportFormat = Literal["markdown", "json"]

REPORT_TITLE = "API Load Test Report"
REPORT_PREFIX = "load-test-report"


def format_duration(value: timedelta) -> str:
    """Render as ``hh:mm:ss``; hours may exceed 24."""
    total = int(value.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def phase_report_lines(phase: PhaseSnapshot, normalizer: EndpointNormalizer) -> list[str]:
    """Completion block printed when a phase is sealed."""
    lines = [
        f"PHASE COMPLETED: {phase.phase}",
        f"  Duration: {format_duration(phase.duration)}",
        f"  Concurrent Users: {phase.user_count}",
        f"  Total Requests: {phase.total_requests}",
        f"  Successful: {phase.successful_requests} ({phase.success_rate:.2f}%)",
        f"  Failed: {phase.failed_requests}",
        f"  Avg Latency: {phase.average_latency_ms:.2f}ms",
        f"  Min Latency: {phase.min_latency_ms}ms",
        f"  Max Latency: {phase.max_latency_ms}ms",
        f"  P50 Latency: {phase.p50_latency_ms:.2f}ms",
        f"  P95 Latency: {phase.p95_latency_ms:.2f}ms",
        f"  P99 Latency: {phase.p99_latency_ms:.2f}ms",
        f"  Requests/sec: {phase.requests_per_second:.2f}",
        "",
        "  Breakdown by Endpoint:",
    ]
    for key, stats in phase.endpoint_breakdown(normalizer).items():
        lines.append(
            f"    {key}: {stats.total} requests, "
            f"{stats.success_rate:.1f}% success, "
            f"avg {stats.average_latency_ms:.0f}ms"
        )
    return lines


class ReportGenerator:
    """
    Renders reports from a run snapshot.

    Usage:
        generator = ReportGenerator(collector.snapshot())
        generator.render_console(console)
        path = generator.save(Path("reports"))
    """

    def __init__(self, snapshot: RunSnapshot, title: str = REPORT_TITLE) -> None:
        self.snapshot = snapshot
        self.title = title

    # ------------------------------------------------------------------
    # Console
    # ------------------------------------------------------------------

    def summary_lines(self) -> list[str]:
        """Final report as plain text lines."""
        snap = self.snapshot
        lines = [
            "FINAL LOAD TEST REPORT",
            f"  Test Duration: {format_duration(snap.duration)}",
            f"  Total Requests: {snap.total_requests}",
            f"  Total Successful: {snap.successful_requests}",
            f"  Total Failed: {snap.failed_requests}",
            f"  Overall Success Rate: {snap.success_rate:.2f}%",
        ]
        if snap.samples:
            lines += [
                f"  Overall Avg Latency: {snap.average_latency_ms:.2f}ms",
                f"  Overall P95 Latency: {snap.p95_latency_ms:.2f}ms",
                f"  Overall P99 Latency: {snap.p99_latency_ms:.2f}ms",
            ]
        lines += ["", "Phase Summary:"]
        for phase in snap.phases_by_start():
            lines.append(
                f"  {phase.phase}: {phase.total_requests} requests, "
                f"{phase.success_rate:.1f}% success, "
                f"{phase.requests_per_second:.1f} req/s"
            )
        return lines

    def summary_text(self) -> str:
        return "\n".join(self.summary_lines())

    def render_console(self, console: Console) -> None:
        """Print the final summary with rich tables."""
        snap = self.snapshot

        overview = Table(title="Final Load Test Report", show_header=False)
        overview.add_column("Metric", style="cyan")
        overview.add_column("Value", justify="right")
        overview.add_row("Test Duration", format_duration(snap.duration))
        overview.add_row("Total Requests", f"{snap.total_requests:,}")
        overview.add_row("Successful", f"{snap.successful_requests:,}")
        overview.add_row("Failed", f"{snap.failed_requests:,}")
        overview.add_row("Success Rate", f"{snap.success_rate:.2f}%")
        if snap.samples:
            overview.add_row("Avg Latency", f"{snap.average_latency_ms:.2f}ms")
            overview.add_row("P95 Latency", f"{snap.p95_latency_ms:.2f}ms")
            overview.add_row("P99 Latency", f"{snap.p99_latency_ms:.2f}ms")
        console.print(overview)

        phases = Table(title="Phase Summary")
        phases.add_column("Phase", style="cyan")
        phases.add_column("Users", justify="right")
        phases.add_column("Requests", justify="right")
        phases.add_column("Success %", justify="right")
        phases.add_column("Req/s", justify="right")
        phases.add_column("P95 (ms)", justify="right")
        for phase in snap.phases_by_start():
            phases.add_row(
                phase.phase,
                str(phase.user_count),
                f"{phase.total_requests:,}",
                f"{phase.success_rate:.1f}",
                f"{phase.requests_per_second:.1f}",
                f"{phase.p95_latency_ms:.0f}",
            )
        console.print(phases)

    # ------------------------------------------------------------------
    # Durable documents
    # ------------------------------------------------------------------

    def to_markdown(self) -> str:
        snap = self.snapshot
        out: list[str] = [
            f"# {self.title}",
            f"Generated: {snap.taken_at:%Y-%m-%d %H:%M:%S} UTC",
            "",
            "## Summary",
            f"- **Test Duration**: {format_duration(snap.duration)}",
            f"- **Total Requests**: {snap.total_requests:,}",
            f"- **Successful Requests**: {snap.successful_requests:,}",
            f"- **Failed Requests**: {snap.failed_requests:,}",
            f"- **Success Rate**: {snap.success_rate:.2f}%",
        ]

        if snap.samples:
            out += [
                "",
                "## Latency Statistics",
                f"- **Average**: {snap.average_latency_ms:.2f}ms",
                f"- **Minimum**: {snap.min_latency_ms}ms",
                f"- **Maximum**: {snap.max_latency_ms}ms",
                f"- **P50**: {snap.p50_latency_ms:.2f}ms",
                f"- **P90**: {snap.p90_latency_ms:.2f}ms",
                f"- **P95**: {snap.p95_latency_ms:.2f}ms",
                f"- **P99**: {snap.p99_latency_ms:.2f}ms",
            ]

        out += ["", "## Phase Details"]
        for phase in snap.phases_by_start():
            out += [
                f"### {phase.phase}",
                f"- **Concurrent Users**: {phase.user_count}",
                f"- **Duration**: {format_duration(phase.duration)}",
                f"- **Total Requests**: {phase.total_requests:,}",
                f"- **Success Rate**: {phase.success_rate:.2f}%",
                f"- **Requests/sec**: {phase.requests_per_second:.2f}",
                f"- **Avg Latency**: {phase.average_latency_ms:.2f}ms",
                f"- **P95 Latency**: {phase.p95_latency_ms:.2f}ms",
                "",
                "| Endpoint | Requests | Success % | Avg Latency |",
                "|----------|----------|-----------|-------------|",
            ]
            for key, stats in phase.endpoint_breakdown(snap.normalizer).items():
                out.append(
                    f"| {key} | {stats.total} | {stats.success_rate:.1f}% "
                    f"| {stats.average_latency_ms:.0f}ms |"
                )
            out.append("")

        errors = snap.error_counts()
        if errors:
            out.append("## Error Summary")
            for message, count in errors:
                out.append(f"- **{message}**: {count} occurrences")

        return "\n".join(out) + "\n"

    def to_dict(self) -> dict[str, Any]:
        snap = self.snapshot
        return {
            "title": self.title,
            "generated_at": snap.taken_at.isoformat(),
            "run_started_at": snap.run_started_at.isoformat(),
            "duration_seconds": round(snap.duration.total_seconds(), 2),
            "overall": {
                "total_requests": snap.total_requests,
                "successful_requests": snap.successful_requests,
                "failed_requests": snap.failed_requests,
                "success_rate": round(snap.success_rate, 2),
                "latency_ms": snap.latency_dict(),
            },
            "phases": [p.to_dict(snap.normalizer) for p in snap.phases_by_start()],
            "errors": [
                {"message": message, "count": count}
                for message, count in snap.error_counts()
            ],
        }

    def report_filename(self, fmt: ReportFormat = "markdown") -> str:
        """``load-test-report-YYYYMMDD-HHMMSS.md`` using the snapshot's UTC time."""
        extension = "json" if fmt == "json" else "md"
        return f"{REPORT_PREFIX}-{self.snapshot.taken_at:%Y%m%d-%H%M%S}.{extension}"

    def save(self, output_dir: Path | str, fmt: ReportFormat = "markdown") -> Path:
        """Write the durable report and return its path."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / self.report_filename(fmt)

        if fmt == "json":
            content = json.dumps(self.to_dict(), indent=2)
        else:
            content = self.to_markdown()

        with open(path, "w", encoding="utf-8") as f:
            f.write(content)

        logger.info(f"Report saved to {path}")
        return path
