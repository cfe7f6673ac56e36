"""
Agent registry.

Tracks provider adapters together with their descriptors (capabilities,
health, availability, declared cost and observed latency).
"""

import asyncio
import logging
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional

from .types import AgentAdapter, AgentDescriptor, HealthStatus

logger = logging.getLogger(__name__)


class AgentRegistry:
    """
    Agent registry

    Responsibilities:
    - Register / unregister adapters
    - Keep descriptors current through health checks
    - Record observed call latency for latency-aware selection
    """

    def __init__(self, latency_smoothing: float = 0.3):
        """
        Args:
            latency_smoothing: Weight of the newest sample in the latency moving average
        """
        self._agents: Dict[str, AgentAdapter] = {}
        self._descriptors: Dict[str, AgentDescriptor] = {}
        self._latency_smoothing = latency_smoothing
        self._last_refresh: Optional[float] = None
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def register(self, agent: AgentAdapter, cost_per_call: float = 0.0) -> AgentDescriptor:
        """Register an adapter under its name()"""
        agent_id = agent.name()
        with self._lock:
            if agent_id in self._agents:
                raise ValueError(f"Agent already registered: {agent_id}")

            descriptor = AgentDescriptor(
                agent_id=agent_id,
                capabilities=frozenset(agent.capabilities()),
                cost_per_call=cost_per_call,
            )
            self._agents[agent_id] = agent
            self._descriptors[agent_id] = descriptor

        logger.info(f"[AgentRegistry] Agent registered: {agent_id}")
        return descriptor

    def unregister(self, agent_id: str) -> None:
        """Remove an adapter"""
        with self._lock:
            if agent_id not in self._agents:
                raise ValueError(f"Agent not found: {agent_id}")
            del self._agents[agent_id]
            del self._descriptors[agent_id]
        logger.info(f"[AgentRegistry] Agent unregistered: {agent_id}")

    def get_agent(self, agent_id: str) -> Optional[AgentAdapter]:
        return self._agents.get(agent_id)

    def get_descriptor(self, agent_id: str) -> Optional[AgentDescriptor]:
        return self._descriptors.get(agent_id)

    def descriptors(self) -> List[AgentDescriptor]:
        """All descriptors, ordered by agent id"""
        with self._lock:
            return [self._descriptors[agent_id] for agent_id in sorted(self._descriptors)]

    def record_latency(self, agent_id: str, latency_ms: float) -> None:
        """Fold one observed call latency into the agent's moving average"""
        with self._lock:
            descriptor = self._descriptors.get(agent_id)
            if descriptor is None:
                return
            if descriptor.average_latency_ms is None:
                descriptor.average_latency_ms = latency_ms
            else:
                alpha = self._latency_smoothing
                descriptor.average_latency_ms = (
                    alpha * latency_ms + (1 - alpha) * descriptor.average_latency_ms
                )
            descriptor.latency_samples += 1

    async def refresh_health(self, timeout_seconds: float = 5.0) -> Dict[str, HealthStatus]:
        """
        Query availability and health of every agent concurrently.

        An adapter whose probe raises or times out is marked UNAVAILABLE.
        """
        agents = list(self._agents.items())
        results = await asyncio.gather(
            *[self._probe(agent, timeout_seconds) for _, agent in agents],
            return_exceptions=True,
        )

        report = {}
        now = datetime.now()
        with self._lock:
            for (agent_id, _), result in zip(agents, results):
                descriptor = self._descriptors.get(agent_id)
                if descriptor is None:
                    continue
                if isinstance(result, BaseException):
                    logger.warning(f"[AgentRegistry] Health check failed for {agent_id}: {result!r}")
                    descriptor.available = False
                    descriptor.health = HealthStatus.UNAVAILABLE
                else:
                    descriptor.available, descriptor.health, descriptor.rate_limit = result
                descriptor.last_health_check = now
                report[agent_id] = descriptor.health
            self._last_refresh = time.monotonic()

        return report

    async def refresh_if_stale(self, interval_seconds: float, timeout_seconds: float = 5.0) -> bool:
        """Refresh health when the last refresh is older than `interval_seconds`"""
        if self._last_refresh is not None and time.monotonic() - self._last_refresh < interval_seconds:
            return False
        await self.refresh_health(timeout_seconds)
        return True

    @staticmethod
    async def _probe(agent: AgentAdapter, timeout_seconds: float):
        available = await asyncio.wait_for(agent.is_available(), timeout=timeout_seconds)
        health = await asyncio.wait_for(agent.health_check(), timeout=timeout_seconds)

        rate_limit = None
        rate_limit_info = getattr(agent, "rate_limit_info", None)
        if rate_limit_info is not None:
            rate_limit = await asyncio.wait_for(rate_limit_info(), timeout=timeout_seconds)
        return bool(available), HealthStatus(health), rate_limit
