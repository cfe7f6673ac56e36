"""
Telemetry - lifecycle events and sinks
"""

from .events import EventSink, EventType, InMemoryEventSink, LifecycleEvent, TelemetryEmitter

__all__ = [
    "EventSink",
    "EventType",
    "InMemoryEventSink",
    "LifecycleEvent",
    "TelemetryEmitter",
]
