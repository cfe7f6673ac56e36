"""
Orchestration - dispatcher and graph execution engine
"""

from .dispatcher import AttemptOutcome, DispatchAttempt, DispatchStats, Dispatcher
from .engine import ExecutionOutcome, ExecutionReport, OrchestrationEngine

__all__ = [
    # Dispatcher
    "AttemptOutcome",
    "DispatchAttempt",
    "DispatchStats",
    "Dispatcher",
    # Engine
    "ExecutionOutcome",
    "ExecutionReport",
    "OrchestrationEngine",
]
