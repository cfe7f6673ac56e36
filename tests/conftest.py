"""
Pytest Configuration and Fixtures

Shared fixtures for the orchestration core tests.
"""

import os
import sys
from typing import Callable, List

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from meta_orchestrator.agents import AgentRegistry, CircuitBreaker, EchoAgent
from meta_orchestrator.config import CircuitConfig, OrchestratorConfig, RetryPolicy
from meta_orchestrator.metrics import MetricsCollector
from meta_orchestrator.task_graph import EdgeCondition, TaskGraph, TaskNode
from meta_orchestrator.telemetry import InMemoryEventSink, TelemetryEmitter


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_config() -> OrchestratorConfig:
    """Config with tiny delays so retries finish quickly"""
    return OrchestratorConfig(
        max_concurrent_tasks=4,
        queue_capacity=100,
        default_timeout_seconds=2.0,
        random_seed=7,
        retry=RetryPolicy(
            max_attempts=3,
            base_delay_seconds=0.01,
            multiplier=2.0,
            max_delay_seconds=0.05,
            jitter=0.0,
        ),
        circuit=CircuitConfig(
            failure_threshold=3,
            window_seconds=60.0,
            cooldown_seconds=60.0,
        ),
    )


@pytest.fixture
def registry() -> AgentRegistry:
    return AgentRegistry()


@pytest.fixture
def echo_registry() -> AgentRegistry:
    """Registry holding one healthy echo agent"""
    registry = AgentRegistry()
    registry.register(EchoAgent("echo"))
    return registry


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(CircuitConfig(failure_threshold=3, window_seconds=60.0, cooldown_seconds=30.0), clock=clock)


@pytest.fixture
def event_sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def emitter(event_sink) -> TelemetryEmitter:
    emitter = TelemetryEmitter(log_events=False)
    emitter.subscribe(event_sink)
    return emitter


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def make_chain() -> Callable[..., TaskGraph]:
    """Build a linear ON_SUCCESS chain of tasks"""

    def _make(*task_ids: str, name: str = "chain") -> TaskGraph:
        graph = TaskGraph(name=name)
        for task_id in task_ids:
            graph.add_task(TaskNode(name=task_id, id=task_id))
        for source, target in zip(task_ids, task_ids[1:]):
            graph.add_dependency(source, target, EdgeCondition.ON_SUCCESS)
        return graph

    return _make


@pytest.fixture
def make_graph() -> Callable[..., TaskGraph]:
    """Build a graph from task ids and (source, target[, condition]) tuples"""

    def _make(task_ids: List[str], edges=(), name: str = "test") -> TaskGraph:
        graph = TaskGraph(name=name)
        for task_id in task_ids:
            graph.add_task(TaskNode(name=task_id, id=task_id))
        for edge in edges:
            graph.add_dependency(*edge)
        return graph

    return _make
