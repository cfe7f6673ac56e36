#!/usr/bin/env python3
"""
Lifecycle telemetry - structured orchestration events

Every state change that matters to an observer (scheduling, dispatch, retry,
circuit transitions) is emitted as a LifecycleEvent, logged on the
"orchestration" logger and fanned out to subscribed sinks.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..agents.circuit_breaker import CircuitState
from ..errors import suppress_errors


class EventType(str, Enum):
    """Lifecycle event type"""
    TASK_SCHEDULED = "task_scheduled"
    TASK_STARTED = "task_started"
    TASK_SUCCEEDED = "task_succeeded"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"
    TASK_RETRYING = "task_retrying"
    TASK_CANCELLED = "task_cancelled"
    AGENT_SELECTED = "agent_selected"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_HALF_OPENED = "circuit_half_opened"
    CIRCUIT_CLOSED = "circuit_closed"
    EXECUTION_STARTED = "execution_started"
    EXECUTION_FINISHED = "execution_finished"


_WARNING_EVENTS = frozenset({
    EventType.TASK_FAILED,
    EventType.CIRCUIT_OPENED,
})


@dataclass
class LifecycleEvent:
    """Structured lifecycle event"""
    event_type: EventType
    timestamp: str
    execution_id: Optional[str] = None
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    attempt: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "execution_id": self.execution_id,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "attempt": self.attempt,
            "details": self.details,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


EventSink = Callable[[LifecycleEvent], None]


class TelemetryEmitter:
    """
    Telemetry emitter

    Responsibilities:
    - Build LifecycleEvents with an ISO timestamp
    - Log each event on the "orchestration" logger
    - Deliver events to every subscribed sink; a failing sink is logged and
      skipped
    """

    def __init__(self, logger_name: str = "orchestration", log_events: bool = True):
        """
        Args:
            logger_name: Logger that receives one line per event
            log_events: Disable to keep events off the log
        """
        self._logger = logging.getLogger(logger_name)
        self._log_events = log_events
        self._sinks: List[EventSink] = []
        self._lock = threading.Lock()

    def subscribe(self, sink: EventSink) -> Callable[[], None]:
        """
        Add a sink.

        Returns:
            Callable that removes the sink again
        """
        with self._lock:
            self._sinks.append(sink)
        return lambda: self.unsubscribe(sink)

    def unsubscribe(self, sink: EventSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def emit(
        self,
        event_type: EventType,
        execution_id: Optional[str] = None,
        task_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        attempt: Optional[int] = None,
        **details: Any,
    ) -> LifecycleEvent:
        """
        Emit an event

        Returns:
            The emitted LifecycleEvent
        """
        event = LifecycleEvent(
            event_type=EventType(event_type),
            timestamp=datetime.now().isoformat(),
            execution_id=execution_id,
            task_id=task_id,
            agent_id=agent_id,
            attempt=attempt,
            details=details,
        )

        if self._log_events:
            self._log(event)

        with self._lock:
            sinks = list(self._sinks)
        for sink in sinks:
            _deliver(sink, event)

        return event

    def on_circuit_transition(
        self,
        agent_id: str,
        old_state: CircuitState,
        new_state: CircuitState,
    ) -> None:
        """CircuitBreaker listener mapping transitions to circuit events"""
        event_type = {
            CircuitState.OPEN: EventType.CIRCUIT_OPENED,
            CircuitState.HALF_OPEN: EventType.CIRCUIT_HALF_OPENED,
            CircuitState.CLOSED: EventType.CIRCUIT_CLOSED,
        }[new_state]
        self.emit(event_type, agent_id=agent_id, previous_state=old_state.value)

    def _log(self, event: LifecycleEvent) -> None:
        parts = [event.event_type.value]
        if event.execution_id:
            parts.append(f"execution={event.execution_id}")
        if event.task_id:
            parts.append(f"task={event.task_id}")
        if event.agent_id:
            parts.append(f"agent={event.agent_id}")
        if event.attempt is not None:
            parts.append(f"attempt={event.attempt}")
        if event.details:
            parts.append(json.dumps(event.details, ensure_ascii=False, default=str))

        level = logging.WARNING if event.event_type in _WARNING_EVENTS else logging.INFO
        self._logger.log(level, " ".join(parts))


@suppress_errors(default_return=None)
def _deliver(sink: EventSink, event: LifecycleEvent) -> None:
    sink(event)


class InMemoryEventSink:
    """Sink that keeps every event in a list (tests, debugging)."""

    def __init__(self):
        self.events: List[LifecycleEvent] = []

    def __call__(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def types(self) -> List[EventType]:
        return [event.event_type for event in self.events]

    def of_type(self, event_type: EventType) -> List[LifecycleEvent]:
        return [event for event in self.events if event.event_type == event_type]

    def for_task(self, task_id: str) -> List[LifecycleEvent]:
        return [event for event in self.events if event.task_id == task_id]

    def clear(self) -> None:
        self.events.clear()
