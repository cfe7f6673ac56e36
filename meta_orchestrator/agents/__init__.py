"""
Agents - adapter contract, registry, selection and circuit breaking
"""

from .types import AgentAdapter, AgentDescriptor, AgentRequest, HealthStatus, RateLimitInfo
from .adapters import EchoAgent, FunctionAgent
from .registry import AgentRegistry
from .circuit_breaker import CallPermit, CircuitBreaker, CircuitState, CircuitStats
from .selector import AgentSelector, Selection, SelectionStrategy

__all__ = [
    # Contract
    "AgentAdapter",
    "AgentDescriptor",
    "AgentRequest",
    "HealthStatus",
    "RateLimitInfo",
    # Reference adapters
    "EchoAgent",
    "FunctionAgent",
    # Registry
    "AgentRegistry",
    # Circuit Breaker
    "CallPermit",
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
    # Selector
    "AgentSelector",
    "Selection",
    "SelectionStrategy",
]
