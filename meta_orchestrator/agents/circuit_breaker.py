#!/usr/bin/env python3
"""
Circuit Breaker - per-agent failure isolation

Keeps a persistently failing provider out of selection so that retries cannot
starve the whole system.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ..config import CircuitConfig

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit state"""
    CLOSED = "closed"        # normal operation
    OPEN = "open"            # blocked after too many failures
    HALF_OPEN = "half_open"  # one probe call allowed


@dataclass
class CircuitStats:
    """Circuit statistics"""
    failure_count: int = 0
    success_count: int = 0
    total_calls: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None


@dataclass(frozen=True)
class CallPermit:
    """
    Permission for one call, returned by `try_acquire`.

    Only the permit holding the HALF_OPEN probe slot (`probe=True`) can close
    or reopen a half-open circuit.
    """
    agent_id: str
    token: int
    probe: bool = False


@dataclass
class _AgentCircuit:
    state: CircuitState = CircuitState.CLOSED
    recent_failures: Deque[float] = field(default_factory=deque)
    last_transition: float = 0.0
    probe_token: Optional[int] = None
    stats: CircuitStats = field(default_factory=CircuitStats)

    @property
    def probe_in_flight(self) -> bool:
        return self.probe_token is not None

    def holds_probe(self, permit: Optional[CallPermit]) -> bool:
        return permit is not None and permit.probe and permit.token == self.probe_token


TransitionListener = Callable[[str, CircuitState, CircuitState], None]


class CircuitBreaker:
    """
    Circuit Breaker pattern, one state machine per agent id.

    Responsibilities:
    - Track consecutive failures per agent inside a sliding window
    - Open the circuit once the failure threshold is reached
    - Admit a single probe after the cooldown and close on its success

    Counters are guarded by one lock; transition listeners are invoked after
    the lock is released.
    """

    def __init__(
        self,
        config: Optional[CircuitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            config: Circuit breaker settings
            clock: Monotonic time source in seconds
        """
        self._config = config or CircuitConfig()
        self._clock = clock
        self._circuits: Dict[str, _AgentCircuit] = {}
        self._listeners: List[TransitionListener] = []
        self._permit_seq = 0
        self._lock = threading.RLock()

    @property
    def config(self) -> CircuitConfig:
        return self._config

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback invoked as listener(agent_id, old_state, new_state)."""
        self._listeners.append(listener)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_state(self, agent_id: str) -> CircuitState:
        """Current circuit state of an agent"""
        with self._lock:
            return self._circuit(agent_id).state

    def get_stats(self, agent_id: str) -> CircuitStats:
        """Statistics of an agent's circuit"""
        with self._lock:
            stats = self._circuit(agent_id).stats
            return CircuitStats(**vars(stats))

    def is_call_permitted(self, agent_id: str) -> bool:
        """
        Whether the agent may receive a call right now.

        Moves an OPEN circuit whose cooldown has elapsed to HALF_OPEN. A
        HALF_OPEN circuit permits a call only while no probe is in flight.
        """
        transitions = []
        with self._lock:
            permitted = self._check(agent_id, transitions)
        self._notify(transitions)
        return permitted

    # =========================================================================
    # Call lifecycle
    # =========================================================================

    def try_acquire(self, agent_id: str) -> Optional[CallPermit]:
        """
        Claim permission for one call.

        In HALF_OPEN this reserves the single probe slot; the caller must
        follow up with record_success, record_failure or release, passing the
        returned permit.

        Returns:
            The permit, or None if the call is not allowed
        """
        transitions = []
        permit = None
        with self._lock:
            if self._check(agent_id, transitions):
                circuit = self._circuit(agent_id)
                circuit.stats.total_calls += 1
                self._permit_seq += 1
                probe = circuit.state == CircuitState.HALF_OPEN
                if probe:
                    circuit.probe_token = self._permit_seq
                permit = CallPermit(agent_id=agent_id, token=self._permit_seq, probe=probe)
        self._notify(transitions)
        return permit

    def release(self, agent_id: str, permit: Optional[CallPermit] = None) -> None:
        """Give back a probe slot without reporting an outcome (e.g. cancelled call)."""
        with self._lock:
            circuit = self._circuit(agent_id)
            if circuit.holds_probe(permit):
                circuit.probe_token = None

    def record_success(self, agent_id: str, permit: Optional[CallPermit] = None) -> None:
        """
        Record a successful call.

        Closes a HALF_OPEN circuit only when `permit` holds the probe slot.
        """
        transitions = []
        with self._lock:
            circuit = self._circuit(agent_id)
            now = self._clock()
            circuit.stats.success_count += 1
            circuit.stats.last_success_time = now

            if circuit.state == CircuitState.CLOSED:
                circuit.recent_failures.clear()
            elif circuit.holds_probe(permit):
                circuit.probe_token = None
                self._transition(agent_id, circuit, CircuitState.CLOSED, transitions)
        self._notify(transitions)

    def record_failure(self, agent_id: str, permit: Optional[CallPermit] = None) -> None:
        """
        Record a failed call.

        Reopens a HALF_OPEN circuit only when `permit` holds the probe slot;
        late failures of calls admitted earlier only update statistics.
        """
        transitions = []
        with self._lock:
            circuit = self._circuit(agent_id)
            now = self._clock()
            circuit.stats.failure_count += 1
            circuit.stats.last_failure_time = now

            if circuit.state == CircuitState.CLOSED:
                circuit.recent_failures.append(now)
                horizon = now - self._config.window_seconds
                while circuit.recent_failures and circuit.recent_failures[0] < horizon:
                    circuit.recent_failures.popleft()
                if len(circuit.recent_failures) >= self._config.failure_threshold:
                    self._transition(agent_id, circuit, CircuitState.OPEN, transitions)

            elif circuit.holds_probe(permit):
                # failed probe: back to OPEN with a fresh cooldown
                circuit.probe_token = None
                self._transition(agent_id, circuit, CircuitState.OPEN, transitions)
        self._notify(transitions)

    # =========================================================================
    # Administration
    # =========================================================================

    def reset(self, agent_id: str) -> None:
        """Reset one agent's circuit to CLOSED"""
        transitions = []
        with self._lock:
            circuit = self._circuit(agent_id)
            if circuit.state != CircuitState.CLOSED:
                self._transition(agent_id, circuit, CircuitState.CLOSED, transitions)
            self._circuits[agent_id] = _AgentCircuit(last_transition=self._clock())
        self._notify(transitions)
        logger.info(f"[CircuitBreaker] {agent_id}: reset to CLOSED")

    def reset_all(self) -> None:
        """Drop every circuit"""
        with self._lock:
            self._circuits.clear()
        logger.info("[CircuitBreaker] All circuits reset")

    def get_summary(self) -> Dict[str, Any]:
        """Summary of every known circuit"""
        with self._lock:
            return {
                agent_id: {
                    "state": circuit.state.value,
                    "recent_failures": len(circuit.recent_failures),
                    "probe_in_flight": circuit.probe_in_flight,
                    "stats": {
                        "failure_count": circuit.stats.failure_count,
                        "success_count": circuit.stats.success_count,
                        "total_calls": circuit.stats.total_calls,
                    },
                }
                for agent_id, circuit in self._circuits.items()
            }

    # =========================================================================
    # Internals (callers hold the lock)
    # =========================================================================

    def _circuit(self, agent_id: str) -> _AgentCircuit:
        circuit = self._circuits.get(agent_id)
        if circuit is None:
            circuit = _AgentCircuit(last_transition=self._clock())
            self._circuits[agent_id] = circuit
        return circuit

    def _check(self, agent_id: str, transitions: List[Tuple[str, CircuitState, CircuitState]]) -> bool:
        circuit = self._circuit(agent_id)

        if circuit.state == CircuitState.OPEN:
            if self._clock() - circuit.last_transition < self._config.cooldown_seconds:
                return False
            self._transition(agent_id, circuit, CircuitState.HALF_OPEN, transitions)

        if circuit.state == CircuitState.HALF_OPEN:
            return not circuit.probe_in_flight

        return True

    def _transition(
        self,
        agent_id: str,
        circuit: _AgentCircuit,
        new_state: CircuitState,
        transitions: List[Tuple[str, CircuitState, CircuitState]],
    ) -> None:
        old_state = circuit.state
        circuit.state = new_state
        circuit.last_transition = self._clock()
        if new_state == CircuitState.CLOSED:
            circuit.recent_failures.clear()
        transitions.append((agent_id, old_state, new_state))

        if new_state == CircuitState.OPEN:
            logger.warning(
                f"[CircuitBreaker] {agent_id}: {old_state.value} -> OPEN "
                f"(failures in window: {len(circuit.recent_failures)})"
            )
        else:
            logger.info(f"[CircuitBreaker] {agent_id}: {old_state.value} -> {new_state.value}")

    def _notify(self, transitions: List[Tuple[str, CircuitState, CircuitState]]) -> None:
        for agent_id, old_state, new_state in transitions:
            for listener in self._listeners:
                listener(agent_id, old_state, new_state)
