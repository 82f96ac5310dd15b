"""
Load Test Metrics Collection

Collects and aggregates request observations during a run:
- Append-only sample log shared by every simulated user
- Per-phase aggregates (opened by start_phase, sealed by end_phase)
- Nearest-rank latency percentiles (p50, p90, p95, p99)
- Per-endpoint breakdowns keyed by normalized endpoint templates
- Error frequency grouping

Writers only append under a short lock. Readers copy under the same lock
and compute outside it, so a report never blocks recording and recording
never corrupts a report.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Sequence

from surge.events import EventBus, EventType

logger = logging.getLogger("surge.metrics")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def percentile(values: Iterable[int | float], p: float) -> int | float:
    """
    Nearest-rank percentile.

    Sorts ascending and returns the value at ``ceil(p/100 * n) - 1``,
    clamped into ``[0, n-1]``. No interpolation.

    Args:
        values: Latencies (any order)
        p: Percentile in (0, 100]

    Returns:
        The selected latency, or 0 for an empty input
    """
    if not 0 < p <= 100:
        raise ValueError(f"Percentile must be in (0, 100], got {p}")

    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        return 0

    index = math.ceil(p / 100 * n) - 1
    return ordered[max(0, min(index, n - 1))]


# ============================================================================
# Samples
# ============================================================================


@dataclass(frozen=True)
class RequestSample:
    """One completed network call."""

    phase: str
    endpoint: str
    method: str
    status_code: int
    latency_ms: int
    is_success: bool
    error_message: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "endpoint": self.endpoint,
            "method": self.method,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "is_success": self.is_success,
            "error_message": self.error_message,
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================================================
# Endpoint Normalization
# ============================================================================


@dataclass(frozen=True)
class EndpointRule:
    """Regex pattern whose match replaces the whole endpoint with a template."""

    pattern: str
    replacement: str

    def __post_init__(self) -> None:
        # Fail early on bad patterns
        object.__setattr__(self, "_compiled", re.compile(self.pattern))

    def matches(self, endpoint: str) -> bool:
        return self._compiled.search(endpoint) is not None  # type: ignore[attr-defined]


DEFAULT_ENDPOINT_RULES: tuple[EndpointRule, ...] = (
    EndpointRule(r"/api/v1/forms/[a-fA-F0-9]{24}$", "/api/v1/forms/{id}"),
    EndpointRule(r"/api/v1/forms/[a-fA-F0-9-]{36}$", "/api/v1/forms/{id}"),
    EndpointRule(r"/api/v1/forms/[a-zA-Z0-9]+$", "/api/v1/forms/{id}"),
    EndpointRule(r"/api/v1/organizations/[a-fA-F0-9]{24}$", "/api/v1/organizations/{id}"),
    EndpointRule(r"/api/v1/organizations/[a-fA-F0-9-]{36}$", "/api/v1/organizations/{id}"),
    EndpointRule(r"/api/v1/organizations/[a-zA-Z0-9]+$", "/api/v1/organizations/{id}"),
)


class EndpointNormalizer:
    """
    Maps raw request paths to endpoint templates.

    Rules are tried in declaration order and the first match wins, even when
    a later rule would be more specific. Unmatched endpoints are their own
    template.
    """

    def __init__(self, rules: Sequence[EndpointRule] | None = None) -> None:
        self.rules: tuple[EndpointRule, ...] = tuple(
            DEFAULT_ENDPOINT_RULES if rules is None else rules
        )

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, str]]) -> EndpointNormalizer:
        """Build from ``(pattern, replacement)`` pairs, e.g. loaded from config."""
        return cls([EndpointRule(pattern, replacement) for pattern, replacement in pairs])

    def normalize(self, endpoint: str) -> str:
        for rule in self.rules:
            if rule.matches(endpoint):
                return rule.replacement
        return endpoint

    def key(self, method: str, endpoint: str) -> str:
        """Aggregation key: ``"{METHOD} {template}"``."""
        return f"{method} {self.normalize(endpoint)}"


# ============================================================================
# Derived Statistics
# ============================================================================


@dataclass(frozen=True)
class EndpointStats:
    """Breakdown entry for one endpoint key."""

    total: int
    successful: int
    average_latency_ms: float

    @property
    def failed(self) -> int:
        return self.total - self.successful

    @property
    def success_rate(self) -> float:
        """Success rate in percent."""
        return self.successful / self.total * 100 if self.total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "success_rate": round(self.success_rate, 2),
            "average_latency_ms": round(self.average_latency_ms, 2),
        }


class _SampleStats:
    """Statistics derived from an immutable ``samples`` tuple."""

    samples: tuple[RequestSample, ...]

    @property
    def total_requests(self) -> int:
        return len(self.samples)

    @property
    def successful_requests(self) -> int:
        return sum(1 for s in self.samples if s.is_success)

    @property
    def failed_requests(self) -> int:
        return self.total_requests - self.successful_requests

    @property
    def success_rate(self) -> float:
        """Success rate in percent (0-100)."""
        total = self.total_requests
        return self.successful_requests / total * 100 if total > 0 else 0.0

    @property
    def latencies(self) -> list[int]:
        return [s.latency_ms for s in self.samples]

    @property
    def average_latency_ms(self) -> float:
        return sum(self.latencies) / len(self.samples) if self.samples else 0.0

    @property
    def min_latency_ms(self) -> int:
        return min(self.latencies) if self.samples else 0

    @property
    def max_latency_ms(self) -> int:
        return max(self.latencies) if self.samples else 0

    def percentile(self, p: float) -> int | float:
        return percentile(self.latencies, p)

    @property
    def p50_latency_ms(self) -> int | float:
        return self.percentile(50)

    @property
    def p90_latency_ms(self) -> int | float:
        return self.percentile(90)

    @property
    def p95_latency_ms(self) -> int | float:
        return self.percentile(95)

    @property
    def p99_latency_ms(self) -> int | float:
        return self.percentile(99)

    def endpoint_breakdown(self, normalizer: EndpointNormalizer) -> dict[str, EndpointStats]:
        """Group by ``"{METHOD} {template}"`` in order of first appearance."""
        groups: dict[str, list[RequestSample]] = {}
        for sample in self.samples:
            groups.setdefault(normalizer.key(sample.method, sample.endpoint), []).append(sample)

        return {
            key: EndpointStats(
                total=len(group),
                successful=sum(1 for s in group if s.is_success),
                average_latency_ms=sum(s.latency_ms for s in group) / len(group),
            )
            for key, group in groups.items()
        }

    def error_counts(self) -> list[tuple[str, int]]:
        """Failed samples grouped by message, most frequent first."""
        counter = Counter(s.error_message or "Unknown" for s in self.samples if not s.is_success)
        return counter.most_common()

    def latency_dict(self) -> dict[str, float]:
        return {
            "count": self.total_requests,
            "mean": round(self.average_latency_ms, 2),
            "min": self.min_latency_ms,
            "max": self.max_latency_ms,
            "p50": self.p50_latency_ms,
            "p90": self.p90_latency_ms,
            "p95": self.p95_latency_ms,
            "p99": self.p99_latency_ms,
        }


@dataclass(frozen=True)
class PhaseSnapshot(_SampleStats):
    """Point-in-time, read-only view of one phase."""

    phase: str
    user_count: int
    start_time: datetime | None
    end_time: datetime | None
    samples: tuple[RequestSample, ...]
    taken_at: datetime

    @property
    def sealed(self) -> bool:
        return self.end_time is not None

    @property
    def duration(self) -> timedelta:
        """Phase wall time; open phases are measured up to the snapshot."""
        if self.start_time is None:
            return timedelta(0)
        end = self.end_time or self.taken_at
        return max(end - self.start_time, timedelta(0))

    @property
    def requests_per_second(self) -> float:
        seconds = self.duration.total_seconds()
        return self.total_requests / seconds if seconds > 0 else 0.0

    @property
    def sort_key(self) -> datetime:
        if self.start_time is not None:
            return self.start_time
        if self.samples:
            return self.samples[0].timestamp
        return self.taken_at

    def to_dict(self, normalizer: EndpointNormalizer) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "user_count": self.user_count,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration.total_seconds(), 2),
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": round(self.success_rate, 2),
            "requests_per_second": round(self.requests_per_second, 2),
            "latency_ms": self.latency_dict(),
            "endpoints": {
                key: stats.to_dict()
                for key, stats in self.endpoint_breakdown(normalizer).items()
            },
        }


@dataclass(frozen=True)
class RunSnapshot(_SampleStats):
    """Point-in-time copy of everything a report needs."""

    run_started_at: datetime
    taken_at: datetime
    samples: tuple[RequestSample, ...]
    phases: dict[str, PhaseSnapshot]
    normalizer: EndpointNormalizer

    @property
    def duration(self) -> timedelta:
        return max(self.taken_at - self.run_started_at, timedelta(0))

    def phases_by_start(self) -> list[PhaseSnapshot]:
        return sorted(self.phases.values(), key=lambda p: p.sort_key)


# ============================================================================
# Phase Aggregate
# ============================================================================


@dataclass
class PhaseAggregate:
    """
    Mutable-then-sealed collection of one phase's observations.

    Derived statistics are computed from a fresh snapshot on every read and
    never cached.
    """

    phase: str
    user_count: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None
    _samples: list[RequestSample] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(self, sample: RequestSample) -> bool:
        """Append a sample; a sealed phase refuses it and returns False."""
        with self._lock:
            if self.end_time is not None:
                return False
            self._samples.append(sample)
            return True

    def open(self, user_count: int, started_at: datetime) -> None:
        with self._lock:
            self.user_count = user_count
            self.start_time = started_at
            self.end_time = None

    def seal(self, ended_at: datetime) -> None:
        with self._lock:
            self.end_time = ended_at

    def snapshot(self, taken_at: datetime | None = None) -> PhaseSnapshot:
        with self._lock:
            samples = tuple(self._samples)
            user_count, start, end = self.user_count, self.start_time, self.end_time
        return PhaseSnapshot(
            phase=self.phase,
            user_count=user_count,
            start_time=start,
            end_time=end,
            samples=samples,
            taken_at=taken_at or utc_now(),
        )

    @property
    def sealed(self) -> bool:
        return self.end_time is not None

    @property
    def total_requests(self) -> int:
        with self._lock:
            return len(self._samples)

    @property
    def success_rate(self) -> float:
        return self.snapshot().success_rate

    @property
    def requests_per_second(self) -> float:
        return self.snapshot().requests_per_second

    def percentile(self, p: float) -> int | float:
        return self.snapshot().percentile(p)

    def endpoint_breakdown(self, normalizer: EndpointNormalizer) -> dict[str, EndpointStats]:
        return self.snapshot().endpoint_breakdown(normalizer)


# ============================================================================
# Collector
# ============================================================================


class MetricsCollector:
    """
    Thread-safe sink for request observations.

    Usage:
        collector = MetricsCollector()
        collector.start_phase("Phase 1 (20 users)", 20)
        collector.record_request("Phase 1 (20 users)", "/api/v1/forms", "GET", 200, 85, True)
        collector.end_phase("Phase 1 (20 users)")
        print(collector.final_report())
    """

    def __init__(
        self,
        normalizer: EndpointNormalizer | None = None,
        event_bus: EventBus | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.normalizer = normalizer or EndpointNormalizer()
        self.event_bus = event_bus
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: list[RequestSample] = []
        self._phases: dict[str, PhaseAggregate] = {}
        self._late_samples = 0
        self.run_started_at = clock()

    def record_request(
        self,
        phase: str,
        endpoint: str,
        method: str,
        status_code: int,
        latency_ms: int,
        is_success: bool,
        error_message: str | None = None,
    ) -> RequestSample:
        """
        Record one completed call.

        Creates the phase aggregate on first reference. Safe to call from any
        number of tasks or threads at once. A sample for an already sealed
        phase stays in the run log but is not attributed to the phase.

        Returns:
            The immutable sample that was stored
        """
        sample = RequestSample(
            phase=phase,
            endpoint=endpoint,
            method=method.upper(),
            status_code=int(status_code),
            latency_ms=max(int(latency_ms), 0),
            is_success=bool(is_success),
            error_message=error_message,
            timestamp=self._clock(),
        )

        with self._lock:
            self._samples.append(sample)
            aggregate = self._phases.get(phase)
            if aggregate is None:
                aggregate = self._phases[phase] = PhaseAggregate(phase=phase)
            accepted = aggregate.add(sample)
            if not accepted:
                self._late_samples += 1

        if not accepted:
            logger.warning(
                f"Sample for sealed phase {phase!r} kept out of its phase: {sample.method} {endpoint}"
            )
        return sample

    def recorder(self, phase: str) -> PhaseRecorder:
        """Bind a phase name so callers only pass per-request values."""
        return PhaseRecorder(self, phase)

    def start_phase(self, phase: str, user_count: int) -> PhaseAggregate:
        """
        Open (or reopen) a phase.

        Calling again for the same phase reassigns the user count and start
        time; already-recorded samples are kept.
        """
        now = self._clock()
        with self._lock:
            aggregate = self._phases.get(phase)
            if aggregate is None:
                aggregate = self._phases[phase] = PhaseAggregate(phase=phase)
        aggregate.open(user_count, now)

        if self.event_bus is not None:
            self.event_bus.emit_nowait(
                EventType.PHASE_STARTED,
                {"phase": phase, "user_count": user_count, "started_at": now.isoformat()},
                source_id=phase,
            )
        return aggregate

    def end_phase(self, phase: str) -> PhaseSnapshot | None:
        """
        Seal a phase and emit its report event.

        Returns:
            The sealed phase snapshot, or None if the phase was never started
        """
        with self._lock:
            aggregate = self._phases.get(phase)
        if aggregate is None or aggregate.start_time is None:
            return None

        with self._lock:
            ended_at = self._clock()
            aggregate.seal(ended_at)
        sealed = aggregate.snapshot(taken_at=ended_at)

        if self.event_bus is not None:
            self.event_bus.emit_nowait(
                EventType.PHASE_COMPLETED,
                {"phase": phase, "snapshot": sealed, "normalizer": self.normalizer},
                source_id=phase,
            )
        return sealed

    def get_phase(self, phase: str) -> PhaseAggregate | None:
        with self._lock:
            return self._phases.get(phase)

    @property
    def phase_names(self) -> list[str]:
        with self._lock:
            return list(self._phases)

    @property
    def sample_count(self) -> int:
        with self._lock:
            return len(self._samples)

    @property
    def late_sample_count(self) -> int:
        """Samples recorded after their phase was sealed."""
        with self._lock:
            return self._late_samples

    @staticmethod
    def percentile(samples: Iterable[RequestSample], p: float) -> int | float:
        """Nearest-rank percentile of the samples' latencies."""
        return percentile((s.latency_ms for s in samples), p)

    def snapshot(self) -> RunSnapshot:
        """Copy all samples and phases; later writes do not affect the result."""
        taken_at = self._clock()
        # Both views are copied under one lock, so every phase sample is also a run sample
        with self._lock:
            samples = tuple(self._samples)
            phases = {
                name: aggregate.snapshot(taken_at=taken_at)
                for name, aggregate in self._phases.items()
            }
        return RunSnapshot(
            run_started_at=self.run_started_at,
            taken_at=taken_at,
            samples=samples,
            phases=phases,
            normalizer=self.normalizer,
        )

    def final_report(self) -> str:
        """Console-oriented summary of the run so far."""
        from surge.report import ReportGenerator

        return ReportGenerator(self.snapshot()).summary_text()

    def detailed_report(self) -> str:
        """Durable Markdown report of the run so far."""
        from surge.report import ReportGenerator

        return ReportGenerator(self.snapshot()).to_markdown()


class PhaseRecorder:
    """A collector bound to one phase, handed to workloads and HTTP clients."""

    def __init__(self, collector: MetricsCollector, phase: str) -> None:
        self.collector = collector
        self.phase = phase

    def record(
        self,
        endpoint: str,
        method: str,
        status_code: int,
        latency_ms: int,
        is_success: bool,
        error_message: str | None = None,
    ) -> RequestSample:
        return self.collector.record_request(
            self.phase, endpoint, method, status_code, latency_ms, is_success, error_message
        )
