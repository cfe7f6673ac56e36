"""
Errors - error taxonomy and handling helpers
"""

from .exceptions import (
    OrchestratorError,
    ValidationError,
    CycleError,
    QueueFullError,
    TaskTimeoutError,
    AgentUnavailableError,
    AgentCallError,
    ConfigurationError,
    ExecutionNotFoundError,
)

from .decorators import suppress_errors

__all__ = [
    # Exceptions
    "OrchestratorError",
    "ValidationError",
    "CycleError",
    "QueueFullError",
    "TaskTimeoutError",
    "AgentUnavailableError",
    "AgentCallError",
    "ConfigurationError",
    "ExecutionNotFoundError",

    # Decorators
    "suppress_errors",
]
