"""
Agent selection.

Filters registered agents by availability, health and circuit state, then
picks one according to the configured strategy.
"""

import logging
import random
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Union

from ..errors import AgentUnavailableError
from ..task_graph.dag import TaskNode
from .circuit_breaker import CallPermit, CircuitBreaker
from .registry import AgentRegistry
from .types import AgentDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selection:
    """Chosen agent together with the circuit permit claimed for the call"""
    descriptor: AgentDescriptor
    permit: CallPermit

    @property
    def agent_id(self) -> str:
        return self.descriptor.agent_id


class SelectionStrategy(str, Enum):
    """Agent selection strategy"""
    ROUND_ROBIN = "round_robin"
    LOWEST_LATENCY = "lowest_latency"
    BEST_MATCH = "best_match"
    COST_OPTIMIZED = "cost_optimized"
    RANDOM = "random"


class AgentSelector:
    """
    Chooses one agent per dispatch.

    Candidates are sorted by agent id before a strategy is applied, so every
    strategy except RANDOM (and ROUND_ROBIN's cursor) is a pure function of the
    candidate set. Selection also claims the agent's circuit permit; in
    HALF_OPEN that permit is the single probe slot.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        breaker: CircuitBreaker,
        strategy: Union[SelectionStrategy, str] = SelectionStrategy.ROUND_ROBIN,
        seed: Optional[int] = None,
    ):
        self._registry = registry
        self._breaker = breaker
        self.strategy = SelectionStrategy(strategy)
        self._rng = random.Random(seed)
        self._cursor = 0
        self._lock = threading.Lock()

    def eligible(
        self,
        exclude: Iterable[str] = (),
    ) -> List[AgentDescriptor]:
        """Agents that are available, not UNAVAILABLE and whose circuit permits a call"""
        excluded = set(exclude)
        return [
            descriptor for descriptor in self._registry.descriptors()
            if descriptor.agent_id not in excluded
            and descriptor.is_eligible
            and self._breaker.is_call_permitted(descriptor.agent_id)
        ]

    def select(self, task: TaskNode, exclude: Iterable[str] = ()) -> Selection:
        """
        Pick an agent for a task and claim its circuit permit.

        The permit must be handed back to the breaker with the call's outcome.

        Raises:
            AgentUnavailableError: If no candidate passes the filter
        """
        excluded = set(exclude)
        while True:
            candidates = self.eligible(excluded)
            if not candidates:
                raise AgentUnavailableError(
                    f"No available agent for task '{task.id}'",
                    excluded=list(excluded),
                )

            chosen = self._choose(task, candidates)
            permit = self._breaker.try_acquire(chosen.agent_id)
            if permit is not None:
                logger.debug(
                    f"Selected agent {chosen.agent_id} for task {task.id} "
                    f"(strategy={self.strategy.value}, candidates={len(candidates)}, probe={permit.probe})"
                )
                return Selection(descriptor=chosen, permit=permit)

            # probe slot taken between filter and claim
            excluded.add(chosen.agent_id)

    def _choose(self, task: TaskNode, candidates: List[AgentDescriptor]) -> AgentDescriptor:
        if self.strategy == SelectionStrategy.ROUND_ROBIN:
            with self._lock:
                index = self._cursor % len(candidates)
                self._cursor += 1
            return candidates[index]

        if self.strategy == SelectionStrategy.LOWEST_LATENCY:
            return min(
                candidates,
                key=lambda d: (
                    d.average_latency_ms is None,
                    d.average_latency_ms or 0.0,
                    d.agent_id,
                ),
            )

        if self.strategy == SelectionStrategy.BEST_MATCH:
            required = set(task.required_capabilities)
            return min(
                candidates,
                key=lambda d: (-len(required & d.capabilities), d.agent_id),
            )

        if self.strategy == SelectionStrategy.COST_OPTIMIZED:
            return min(candidates, key=lambda d: (d.cost_per_call, d.agent_id))

        with self._lock:
            return self._rng.choice(candidates)
