"""
Reference agent adapters.

Useful for smoke runs and tests; real provider adapters live outside this
package and implement the same contract.
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Optional, Set

from .types import AgentRequest, HealthStatus, RateLimitInfo


class EchoAgent:
    """Agent that answers every request with its payload."""

    def __init__(
        self,
        agent_id: str,
        capabilities: Optional[Iterable[str]] = None,
        latency_seconds: float = 0.0,
        health: HealthStatus = HealthStatus.HEALTHY,
    ):
        self._agent_id = agent_id
        self._capabilities = set(capabilities or ())
        self.latency_seconds = latency_seconds
        self.health = health
        self.available = True
        self.rate_limit: Optional[RateLimitInfo] = None
        self.calls = 0

    def name(self) -> str:
        return self._agent_id

    def capabilities(self) -> Set[str]:
        return set(self._capabilities)

    async def is_available(self) -> bool:
        return self.available

    async def health_check(self) -> HealthStatus:
        return self.health

    async def rate_limit_info(self) -> Optional[RateLimitInfo]:
        return self.rate_limit

    async def submit(self, request: AgentRequest) -> Any:
        self.calls += 1
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        return {"agent": self._agent_id, "task_id": request.task_id, "echo": request.payload}


class FunctionAgent:
    """
    Agent backed by an async callable.

    Example:
        async def handler(request):
            return await my_client.complete(request.payload)

        agent = FunctionAgent("claude", handler, capabilities={"reasoning"})
    """

    def __init__(
        self,
        agent_id: str,
        handler: Callable[[AgentRequest], Awaitable[Any]],
        capabilities: Optional[Iterable[str]] = None,
        health: HealthStatus = HealthStatus.HEALTHY,
    ):
        self._agent_id = agent_id
        self._handler = handler
        self._capabilities = set(capabilities or ())
        self.health = health
        self.available = True
        self.rate_limit: Optional[RateLimitInfo] = None
        self.calls = 0

    def name(self) -> str:
        return self._agent_id

    def capabilities(self) -> Set[str]:
        return set(self._capabilities)

    async def is_available(self) -> bool:
        return self.available

    async def health_check(self) -> HealthStatus:
        return self.health

    async def rate_limit_info(self) -> Optional[RateLimitInfo]:
        return self.rate_limit

    async def submit(self, request: AgentRequest) -> Any:
        self.calls += 1
        return await self._handler(request)
