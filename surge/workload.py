"""
Workload interface.

A workload is the business flow one simulated user repeats: an ordered list
of named steps. The engine never looks inside a step; it only sees the
StepResult and the samples the step records through its PhaseRecorder.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

if TYPE_CHECKING:
    from surge.cancellation import CancellationToken
    from surge.metrics import PhaseRecorder


@dataclass
class StepResult:
    """Outcome of one workload step."""

    success: bool
    detail: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, detail: str | None = None, **metadata: Any) -> StepResult:
        return cls(success=True, detail=detail, metadata=metadata)

    @classmethod
    def failed(cls, detail: str | None = None, **metadata: Any) -> StepResult:
        return cls(success=False, detail=detail, metadata=metadata)


@dataclass
class StepContext:
    """
    Everything a step may use during one iteration.

    ``state`` is private to the iteration and shared between its steps
    (auth tokens, created resource ids, an HTTP client).
    """

    phase: str
    user_id: int
    iteration: int
    identity: str
    recorder: PhaseRecorder
    token: CancellationToken
    state: dict[str, Any] = field(default_factory=dict)


StepFunc = Callable[[StepContext], Awaitable[StepResult]]


@dataclass(frozen=True)
class Step:
    """
    A named unit of a workload.

    A failing ``required`` step skips the rest of its iteration; other
    failures are logged and the next step runs.
    """

    name: str
    run: StepFunc
    required: bool = False


class Workload(ABC):
    """Base class for workloads driven by the worker loop."""

    name: str = "workload"
    description: str = ""

    @abstractmethod
    def steps(self) -> Sequence[Step]:
        """Ordered steps of one iteration."""

    @abstractmethod
    def new_identity(self, user_id: int, iteration: int) -> str:
        """
        Generate the identity used by one iteration.

        The identity is also the key handed to the data store cleanup.
        """

    async def begin_iteration(self, context: StepContext) -> None:
        """Acquire per-iteration resources (e.g. an HTTP client)."""

    async def end_iteration(self, context: StepContext) -> None:
        """Release what ``begin_iteration`` acquired. Always called."""

    async def close(self) -> None:
        """Release workload-wide resources at the end of the run."""
