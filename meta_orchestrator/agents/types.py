"""
Agent adapter contract and descriptors.

Provider adapters are independent types implementing `AgentAdapter`; the
orchestrator never inspects request payloads or results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Protocol, Set, runtime_checkable


class HealthStatus(str, Enum):
    """Health reported by an agent adapter."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass
class RateLimitInfo:
    """Provider quota hint; any field may be unknown."""
    requests_remaining: Optional[int] = None
    requests_limit: Optional[int] = None
    reset_time: Optional[datetime] = None
    tokens_remaining: Optional[int] = None
    tokens_limit: Optional[int] = None

    def is_exhausted(self, now: Optional[datetime] = None) -> bool:
        """No requests or tokens left and the quota window has not reset yet."""
        if self.requests_remaining != 0 and self.tokens_remaining != 0:
            return False
        if self.reset_time is None:
            return True
        return (now or datetime.now(self.reset_time.tzinfo)) < self.reset_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests_remaining": self.requests_remaining,
            "requests_limit": self.requests_limit,
            "reset_time": self.reset_time.isoformat() if self.reset_time else None,
            "tokens_remaining": self.tokens_remaining,
            "tokens_limit": self.tokens_limit,
        }


@dataclass
class AgentRequest:
    """One call to an agent on behalf of a task attempt."""
    task_id: str
    task_name: str
    payload: Any
    attempt: int
    timeout_seconds: float
    execution_id: Optional[str] = None
    required_capabilities: FrozenSet[str] = frozenset()
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class AgentAdapter(Protocol):
    """Protocol implemented by provider adapters."""

    def name(self) -> str:
        """Stable agent identity."""

    def capabilities(self) -> Set[str]:
        """Declared capability tags."""

    async def is_available(self) -> bool:
        """Whether the provider currently accepts requests."""

    async def health_check(self) -> HealthStatus:
        """Probe provider health."""

    async def submit(self, request: AgentRequest) -> Any:
        """Execute a request and return its result; raise on provider error."""


# Adapters may additionally define `async def rate_limit_info() -> RateLimitInfo`;
# the registry reads it during health refresh when present.


@dataclass
class AgentDescriptor:
    """Registry view of one agent."""
    agent_id: str
    capabilities: FrozenSet[str] = frozenset()
    health: HealthStatus = HealthStatus.HEALTHY
    available: bool = True
    cost_per_call: float = 0.0
    average_latency_ms: Optional[float] = None
    latency_samples: int = 0
    last_health_check: Optional[datetime] = None
    rate_limit: Optional[RateLimitInfo] = None

    @property
    def is_eligible(self) -> bool:
        """Healthy or degraded, flagged available and not out of quota."""
        if self.rate_limit is not None and self.rate_limit.is_exhausted():
            return False
        return self.available and self.health != HealthStatus.UNAVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "capabilities": sorted(self.capabilities),
            "health": self.health.value,
            "available": self.available,
            "cost_per_call": self.cost_per_call,
            "average_latency_ms": self.average_latency_ms,
            "latency_samples": self.latency_samples,
            "last_health_check": (
                self.last_health_check.isoformat() if self.last_health_check else None
            ),
            "rate_limit": self.rate_limit.to_dict() if self.rate_limit else None,
        }
