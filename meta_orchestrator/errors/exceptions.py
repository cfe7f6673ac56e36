"""
Exceptions - orchestrator error taxonomy

Every error raised by the orchestration core derives from OrchestratorError and
carries a stable code plus structured details.
"""

from typing import Optional, Dict, Any, List


class OrchestratorError(Exception):
    """Base error for the orchestration core"""

    retryable = False

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Args:
            message: Human-readable message
            code: Stable error code
            details: Additional structured information
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert the error to a dictionary"""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(OrchestratorError):
    """Malformed task or edge reference, duplicate id or depth violation"""

    def __init__(self, message: str, task_id: Optional[str] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"task_id": task_id} if task_id else {}
        )
        self.task_id = task_id


class CycleError(ValidationError):
    """The dependency graph contains a cycle"""

    def __init__(self, task_id: str, cycle: Optional[List[str]] = None):
        self.cycle = list(cycle or [task_id])
        path = " -> ".join(self.cycle)
        super().__init__(
            message=f"Dependency cycle detected at task '{task_id}': {path}",
            task_id=task_id
        )
        self.code = "CYCLE_DETECTED"
        self.details["cycle"] = self.cycle


class QueueFullError(OrchestratorError):
    """Scheduler capacity reached; the caller must retry later"""

    def __init__(self, capacity: int, task_id: Optional[str] = None):
        super().__init__(
            message=f"Scheduler queue is full (capacity={capacity})",
            code="QUEUE_FULL",
            details={"capacity": capacity, "task_id": task_id}
        )
        self.capacity = capacity


class TaskTimeoutError(OrchestratorError, TimeoutError):
    """A single dispatch attempt exceeded its timeout"""

    retryable = True

    def __init__(self, task_id: str, timeout_seconds: float, agent_id: Optional[str] = None):
        super().__init__(
            message=f"Task '{task_id}' timed out after {timeout_seconds}s",
            code="TASK_TIMEOUT",
            details={
                "task_id": task_id,
                "timeout_seconds": timeout_seconds,
                "agent_id": agent_id
            }
        )
        self.timeout_seconds = timeout_seconds


class AgentUnavailableError(OrchestratorError):
    """No eligible agent for a dispatch"""

    def __init__(self, message: str = "No available agents", excluded: Optional[List[str]] = None):
        super().__init__(
            message=message,
            code="AGENT_UNAVAILABLE",
            details={"excluded": sorted(excluded or [])}
        )


class AgentCallError(OrchestratorError):
    """An agent adapter reported an error for a request"""

    retryable = True

    def __init__(self, agent_id: str, reason: str):
        super().__init__(
            message=f"Agent '{agent_id}' failed: {reason}",
            code="AGENT_CALL_FAILED",
            details={"agent_id": agent_id, "reason": reason}
        )
        self.agent_id = agent_id


class ConfigurationError(OrchestratorError):
    """Invalid orchestrator configuration"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            details={"field": field} if field else {}
        )


class ExecutionNotFoundError(OrchestratorError):
    """Unknown execution id"""

    def __init__(self, execution_id: str):
        super().__init__(
            message=f"Execution '{execution_id}' not found",
            code="EXECUTION_NOT_FOUND",
            details={"execution_id": execution_id}
        )
