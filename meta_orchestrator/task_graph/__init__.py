"""
Task Graph system.
Provides the conditional dependency graph and the priority scheduler.
"""

from .dag import (
    TaskGraph,
    TaskNode,
    Task,
    TaskStatus,
    TERMINAL_STATUSES,
    EdgeCondition,
    Edge,
    Priority,
    ValidationResult,
    TerminalUpdate,
)
from .scheduler import PriorityScheduler, QueueStats

__all__ = [
    # DAG
    "TaskGraph",
    "TaskNode",
    "Task",
    "TaskStatus",
    "TERMINAL_STATUSES",
    "EdgeCondition",
    "Edge",
    "Priority",
    "ValidationResult",
    "TerminalUpdate",
    # Scheduler
    "PriorityScheduler",
    "QueueStats",
]
