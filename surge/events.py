"""
Surge - Event System

The orchestrator, scheduler, collector and workers narrate what they do by
emitting events. Rendering (console output, logs) subscribes to the bus and
is kept out of the load-generation code paths.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import uuid4

logger = logging.getLogger("surge.events")


class EventType(str, Enum):
    """Types of events emitted during a run."""

    # Run lifecycle
    RUN_STARTED = "run.started"
    RUN_CANCELLED = "run.cancelled"
    RUN_COMPLETED = "run.completed"
    REST_STARTED = "run.rest"
    REPORT_SAVED = "run.report_saved"

    # Phase lifecycle
    PHASE_STARTED = "phase.started"
    PHASE_DEADLINE = "phase.deadline"
    PHASE_COMPLETED = "phase.completed"
    PHASE_COOLDOWN = "phase.cooldown"

    # Worker activity
    WORKER_FAILED = "worker.failed"
    ITERATION_STARTED = "iteration.started"
    ITERATION_FAILED = "iteration.failed"
    ITERATION_CANCELLED = "iteration.cancelled"
    CLEANUP_FAILED = "iteration.cleanup_failed"


@dataclass
class Event:
    """Represents an event in the system."""

    event_type: EventType
    payload: dict[str, Any]
    source_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "source_id": self.source_id,
            "payload": {k: v for k, v in self.payload.items() if _is_plain(v)},
            "timestamp": self.timestamp.isoformat(),
        }


# Handlers may be plain functions or coroutine functions
EventHandler = Callable[[Event], "Awaitable[None] | None"]


class EventBus:
    """
    Publish/subscribe hub for run narration.

    Supports:
    - Sync and async handlers
    - Multiple handlers per event type, plus wildcard subscribers
    - Bounded event history for debugging and tests
    """

    def __init__(self, max_history: int = 1000) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._wildcard: list[EventHandler] = []
        self._history: list[Event] = []
        self._max_history = max_history
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(
        self,
        event_type: EventType | None,
        handler: EventHandler,
    ) -> Callable[[], None]:
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to, or None for all events
            handler: Function called with each matching event

        Returns:
            Unsubscribe function
        """
        handlers = self._wildcard if event_type is None else self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def _dispatch(self, event: Event) -> list[Awaitable[None]]:
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        awaitables: list[Awaitable[None]] = []
        for handler in [*self._handlers.get(event.event_type, []), *self._wildcard]:
            try:
                result = handler(event)
            except Exception as e:
                logger.error(f"Handler error for {event.event_type.value}: {e}")
                continue
            if inspect.isawaitable(result):
                awaitables.append(result)
        return awaitables

    async def publish(self, event: Event) -> None:
        """Publish an event and wait for async handlers to finish."""
        awaitables = self._dispatch(event)
        if not awaitables:
            return
        results = await asyncio.gather(*awaitables, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Handler error for {event.event_type.value}: {result}")

    def publish_nowait(self, event: Event) -> None:
        """
        Publish from synchronous code.

        Sync handlers run immediately; async handlers are scheduled on the
        running loop, or dropped with a warning when there is none.
        """
        for awaitable in self._dispatch(event):
            try:
                task = asyncio.ensure_future(awaitable)
            except RuntimeError:
                logger.warning(f"No running loop for async handler of {event.event_type.value}")
                if inspect.iscoroutine(awaitable):
                    awaitable.close()
                continue
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def emit(
        self,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
        source_id: str | None = None,
    ) -> Event:
        """Create and publish an event."""
        event = Event(event_type=event_type, payload=payload or {}, source_id=source_id)
        await self.publish(event)
        return event

    def emit_nowait(
        self,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
        source_id: str | None = None,
    ) -> Event:
        """Create and publish an event from synchronous code."""
        event = Event(event_type=event_type, payload=payload or {}, source_id=source_id)
        self.publish_nowait(event)
        return event

    def history(self, event_type: EventType | None = None) -> list[Event]:
        """Return recorded events, optionally filtered by type."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if e.event_type == event_type]

    def clear_history(self) -> None:
        """Clear event history."""
        self._history.clear()


def _is_plain(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool, list, dict))
