"""
Surge CLI - Command-line interface for the load generator.

Commands:
- surge run         - Run all configured phases and write the report
- surge plan        - Show the resolved phase plan without running
- surge workloads   - List available workloads
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from surge.cancellation import CancellationToken
from surge.config import REPORT_FORMAT_ALIASES, SurgeConfig, build_config, load_config
from surge.console import ConsoleReporter
from surge.datastore import DataStore, MongoDataStore, NullDataStore
from surge.errors import ConfigurationError
from surge.events import EventBus
from surge.metrics import MetricsCollector
from surge.runner import RunOrchestrator, RunResult, RunSettings
from surge.scenarios import WORKLOADS, get_workload, list_workloads
from surge.workload import Workload

# Initialize
app = typer.Typer(
    name="surge",
    help="Surge - Phase-driven HTTP load generator",
    add_completion=False,
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("surge.cli")

EXIT_CONFIG_ERROR = 2
EXIT_FAILURE = 1


# ============================================================================
# Helper Functions
# ============================================================================


def parse_phase(value: str) -> dict[str, Any]:
    """Parse ``USERS:MINUTES`` (e.g. ``20:10``)."""
    users, sep, minutes = value.partition(":")
    try:
        if not sep:
            raise ValueError(value)
        return {"users": int(users), "duration_minutes": float(minutes)}
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid phase {value!r}, expected USERS:MINUTES", setting="phases"
        ) from e


def resolve_config(
    config_path: Optional[str] = None,
    *,
    base_url: Optional[str] = None,
    phases: Optional[list[str]] = None,
    iterations: Optional[int] = None,
    rest_minutes: Optional[float] = None,
    cooldown_seconds: Optional[float] = None,
    skip_cleanup: bool = False,
    report_format: Optional[str] = None,
    output_dir: Optional[str] = None,
    workload: Optional[str] = None,
) -> SurgeConfig:
    """Load file/env configuration and apply CLI options on top."""
    config = load_config(config_path)
    data = config.model_dump()

    if base_url:
        data["api"]["base_url"] = base_url
    if phases:
        data["load_test"]["phases"] = [parse_phase(p) for p in phases]
    if iterations is not None:
        data["load_test"]["iterations_per_user"] = iterations
    if rest_minutes is not None:
        data["load_test"]["rest_duration_minutes"] = rest_minutes
    if cooldown_seconds is not None:
        data["load_test"]["phase_cooldown_seconds"] = cooldown_seconds
    if workload:
        data["load_test"]["workload"] = workload
    if skip_cleanup:
        data["datastore"]["enabled"] = False
    if report_format:
        data["report"]["format"] = REPORT_FORMAT_ALIASES.get(report_format, report_format)
    if output_dir:
        data["report"]["output_dir"] = output_dir

    config = build_config(data)
    if config.load_test.workload not in WORKLOADS:
        raise ConfigurationError(
            f"Unknown workload: {config.load_test.workload}. "
            f"Available: {list(WORKLOADS.keys())}",
            setting="load_test.workload",
        )
    # Workload options are only checked by constructing the workload
    build_workload(config, NullDataStore())
    return config


def build_datastore(config: SurgeConfig) -> DataStore:
    if not config.datastore.enabled:
        return NullDataStore()
    return MongoDataStore(
        config.datastore.connection_string or "",
        config.datastore.database_name,
        user_pattern=config.datastore.user_pattern,
    )


def build_workload(config: SurgeConfig, datastore: DataStore) -> Workload:
    """
    Construct the configured workload.

    Raises:
        ConfigurationError: If the workload rejects its options
    """
    try:
        return get_workload(
            config.load_test.workload,
            config.api.base_url,
            datastore=datastore,
            timeout_seconds=config.api.request_timeout_seconds,
            **config.load_test.workload_options,
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid options for workload {config.load_test.workload!r}: {e}",
            setting="load_test.workload_options",
        ) from e


async def execute(config: SurgeConfig, verbose: bool = False) -> RunResult:
    """Wire up a run from configuration and execute it."""
    bus = EventBus()
    reporter = ConsoleReporter(console, verbose=verbose)
    reporter.attach(bus)

    datastore: DataStore | None = None
    workload: Workload | None = None
    orchestrator: RunOrchestrator | None = None
    try:
        datastore = build_datastore(config)
        workload = build_workload(config, datastore)
        collector = MetricsCollector(config.normalizer(), event_bus=bus)
        orchestrator = RunOrchestrator(
            RunSettings.from_config(config),
            collector,
            workload,
            datastore=datastore,
            event_bus=bus,
        )

        token = CancellationToken("run")
        orchestrator.install_signal_handlers(token)
        return await orchestrator.run(token)
    finally:
        if orchestrator is not None:
            orchestrator.remove_signal_handlers()
        if workload is not None:
            await workload.close()
        if datastore is not None:
            await datastore.close()
        reporter.detach()


# ============================================================================
# Commands
# ============================================================================


@app.command()
def run(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML config file"),
    base_url: Optional[str] = typer.Option(None, "--base-url", "-u", help="Target API base URL"),
    phase: Optional[list[str]] = typer.Option(
        None, "--phase", "-p", help="Phase as USERS:MINUTES (repeatable)"
    ),
    iterations: Optional[int] = typer.Option(None, "--iterations", "-i", help="Iterations per user per phase"),
    rest: Optional[float] = typer.Option(None, "--rest", help="Rest after the last phase (minutes)"),
    cooldown: Optional[float] = typer.Option(None, "--cooldown", help="Pause between phases (seconds)"),
    skip_cleanup: bool = typer.Option(False, "--skip-cleanup", help="Do not touch the database"),
    report_format: Optional[str] = typer.Option(None, "--report-format", "-f", help="md or json"),
    output_dir: Optional[str] = typer.Option(None, "--output-dir", "-o", help="Report directory"),
    workload: Optional[str] = typer.Option(None, "--workload", "-w", help="Workload name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run the load test."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = resolve_config(
            config_path,
            base_url=base_url,
            phases=phase,
            iterations=iterations,
            rest_minutes=rest,
            cooldown_seconds=cooldown,
            skip_cleanup=skip_cleanup,
            report_format=report_format,
            output_dir=output_dir,
            workload=workload,
        )
        config.require_runnable()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {escape(e.message)}")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    try:
        result = asyncio.run(execute(config, verbose=verbose))
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {escape(e.message)}")
        raise typer.Exit(EXIT_CONFIG_ERROR)
    except Exception as e:
        logger.exception("Load test failed")
        console.print(f"[red]Load test failed:[/red] {escape(str(e))}")
        raise typer.Exit(EXIT_FAILURE)

    if result.cancelled:
        console.print("[yellow]Load test cancelled; partial results reported.[/yellow]")
    else:
        console.print("\n[green]Load test completed![/green]")


@app.command()
def plan(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML config file"),
    phase: Optional[list[str]] = typer.Option(
        None, "--phase", "-p", help="Phase as USERS:MINUTES (repeatable)"
    ),
    iterations: Optional[int] = typer.Option(None, "--iterations", "-i", help="Iterations per user per phase"),
) -> None:
    """Show the resolved phase plan."""
    try:
        config = resolve_config(config_path, phases=phase, iterations=iterations)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {escape(e.message)}")
        raise typer.Exit(EXIT_CONFIG_ERROR)

    table = Table(title=f"Load Test Plan ({config.api.base_url})")
    table.add_column("Phase", style="cyan")
    table.add_column("Users", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Iterations/User", justify="right")

    for p in config.phase_plans():
        table.add_row(
            p.name,
            str(p.user_count),
            f"{p.duration_seconds / 60:g} min",
            str(p.iterations_per_user),
        )

    console.print(table)
    console.print(
        f"Cool-down {config.load_test.phase_cooldown_seconds:g}s between phases, "
        f"rest {config.load_test.rest_duration_minutes:g} min at the end, "
        f"workload [bold]{config.load_test.workload}[/bold]"
    )


@app.command("workloads")
def workloads_cmd() -> None:
    """List available workloads."""
    table = Table(title="Available Workloads")
    table.add_column("Name", style="cyan")
    table.add_column("Description")

    for w in list_workloads():
        table.add_row(w["name"], w["description"])

    console.print(table)


# ============================================================================
# Entry Point
# ============================================================================


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
