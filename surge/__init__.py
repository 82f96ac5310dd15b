"""
Surge - Phase-driven HTTP load generator

Runs escalating phases of concurrent simulated users against an API,
records every call and reports latency, throughput and error statistics
per phase and for the whole run.
"""

from surge.cancellation import CancellationToken
from surge.errors import (
    ConfigurationError,
    DataStoreError,
    ErrorKind,
    SurgeError,
    WorkloadError,
)
from surge.metrics import (
    EndpointNormalizer,
    EndpointRule,
    MetricsCollector,
    PhaseRecorder,
    PhaseSnapshot,
    RequestSample,
    RunSnapshot,
    percentile,
)
from surge.report import ReportGenerator
from surge.runner import RunOrchestrator, RunResult, RunSettings
from surge.scheduler import PhaseOutcome, PhasePlan, PhaseScheduler, PhaseState
from surge.worker import Worker, WorkerReport
from surge.workload import Step, StepContext, StepResult, Workload

__version__ = "0.1.0"

__all__ = [
    # Runner
    "RunOrchestrator",
    "RunSettings",
    "RunResult",
    "PhaseScheduler",
    "PhasePlan",
    "PhaseOutcome",
    "PhaseState",
    "Worker",
    "WorkerReport",
    "CancellationToken",
    # Workloads
    "Workload",
    "Step",
    "StepContext",
    "StepResult",
    # Metrics
    "MetricsCollector",
    "PhaseRecorder",
    "RequestSample",
    "PhaseSnapshot",
    "RunSnapshot",
    "EndpointNormalizer",
    "EndpointRule",
    "percentile",
    "ReportGenerator",
    # Errors
    "SurgeError",
    "ConfigurationError",
    "WorkloadError",
    "DataStoreError",
    "ErrorKind",
]
