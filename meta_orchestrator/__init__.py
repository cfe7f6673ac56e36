"""
Meta Orchestrator - dependency-aware dispatch of work to interchangeable agents
"""

from .config import CircuitConfig, OrchestratorConfig, RetryPolicy
from .task_graph import (
    EdgeCondition,
    Priority,
    PriorityScheduler,
    Task,
    TaskGraph,
    TaskNode,
    TaskStatus,
    ValidationResult,
)
from .agents import (
    AgentAdapter,
    AgentRegistry,
    AgentRequest,
    AgentSelector,
    CircuitBreaker,
    CircuitState,
    EchoAgent,
    FunctionAgent,
    HealthStatus,
    SelectionStrategy,
)
from .orchestration import (
    DispatchAttempt,
    Dispatcher,
    ExecutionOutcome,
    ExecutionReport,
    OrchestrationEngine,
)
from .telemetry import EventType, InMemoryEventSink, LifecycleEvent, TelemetryEmitter

__version__ = "0.1.0"

__all__ = [
    "CircuitConfig",
    "OrchestratorConfig",
    "RetryPolicy",
    "EdgeCondition",
    "Priority",
    "PriorityScheduler",
    "Task",
    "TaskGraph",
    "TaskNode",
    "TaskStatus",
    "ValidationResult",
    "AgentAdapter",
    "AgentRegistry",
    "AgentRequest",
    "AgentSelector",
    "CircuitBreaker",
    "CircuitState",
    "EchoAgent",
    "FunctionAgent",
    "HealthStatus",
    "SelectionStrategy",
    "DispatchAttempt",
    "Dispatcher",
    "ExecutionOutcome",
    "ExecutionReport",
    "OrchestrationEngine",
    "EventType",
    "InMemoryEventSink",
    "LifecycleEvent",
    "TelemetryEmitter",
]
