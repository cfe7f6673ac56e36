"""
Dispatcher Unit Tests

Admission gate, timeout, retry, circuit breaking and cancellation.
"""

import asyncio
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from meta_orchestrator.agents import (
    AgentRegistry,
    AgentSelector,
    CircuitBreaker,
    CircuitState,
    EchoAgent,
    FunctionAgent,
)
from meta_orchestrator.orchestration import AttemptOutcome, Dispatcher
from meta_orchestrator.task_graph import (
    Priority,
    PriorityScheduler,
    TaskGraph,
    TaskNode,
    TaskStatus,
)
from meta_orchestrator.telemetry import EventType


@pytest.fixture
def build_dispatcher(fast_config, emitter, metrics):
    """Wire a Dispatcher around a graph and registry"""

    def _build(graph: TaskGraph, registry: AgentRegistry, config=None, breaker=None, capacity=None):
        config = config or fast_config
        breaker = breaker or CircuitBreaker(config.circuit)
        scheduler = PriorityScheduler(capacity=capacity or config.queue_capacity)
        selector = AgentSelector(registry, breaker, config.selection_strategy, seed=config.random_seed)
        return Dispatcher(
            graph=graph,
            scheduler=scheduler,
            selector=selector,
            breaker=breaker,
            registry=registry,
            config=config,
            emitter=emitter,
            metrics=metrics,
            execution_id="exec-test",
        )

    return _build


def _registry(*agents) -> AgentRegistry:
    registry = AgentRegistry()
    for agent in agents:
        registry.register(agent)
    return registry


class TestAdmission:
    """Concurrency cap and ordering"""

    @pytest.mark.asyncio
    async def test_two_independent_tasks_with_concurrency_one(self, make_graph, build_dispatcher, fast_config):
        graph = make_graph(["x", "y"])
        config = replace(fast_config, max_concurrent_tasks=1)
        dispatcher = build_dispatcher(graph, _registry(EchoAgent("echo", latency_seconds=0.01)), config=config)

        attempts = await dispatcher.run()

        assert graph.status_map() == {"x": TaskStatus.SUCCEEDED, "y": TaskStatus.SUCCEEDED}
        assert len(attempts) == 2
        assert dispatcher.stats().peak_active == 1

    @pytest.mark.asyncio
    async def test_concurrency_cap_never_exceeded(self, make_graph, build_dispatcher, fast_config):
        graph = make_graph([f"t{i}" for i in range(12)])
        config = replace(fast_config, max_concurrent_tasks=3)
        in_flight = 0
        observed = []

        async def handler(request):
            nonlocal in_flight
            in_flight += 1
            observed.append(in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return request.task_id

        dispatcher = build_dispatcher(graph, _registry(FunctionAgent("worker", handler)), config=config)

        await dispatcher.run()

        assert graph.is_finished()
        assert max(observed) <= 3
        assert dispatcher.stats().peak_active <= 3
        assert dispatcher.stats().active == 0

    @pytest.mark.asyncio
    async def test_priority_order_with_single_slot(self, build_dispatcher, fast_config):
        graph = TaskGraph()
        graph.add_task(TaskNode(name="low", id="low", priority=Priority.LOW))
        graph.add_task(TaskNode(name="high", id="high", priority=Priority.HIGH))
        graph.add_task(TaskNode(name="critical", id="critical", priority=Priority.CRITICAL))
        agent = FunctionAgent("worker", _echo_task_id)
        dispatcher = build_dispatcher(graph, _registry(agent), config=replace(fast_config, max_concurrent_tasks=1))

        attempts = await dispatcher.run()

        assert [attempt.task_id for attempt in attempts] == ["critical", "high", "low"]

    @pytest.mark.asyncio
    async def test_predecessors_terminal_before_start(self, make_graph, build_dispatcher):
        graph = make_graph(
            ["a", "b", "c", "d"],
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        violations = []

        async def handler(request):
            for edge in graph.predecessors(request.task_id):
                if not graph.get_node(edge.source).is_terminal:
                    violations.append((edge.source, request.task_id))
            await asyncio.sleep(0.005)
            return "ok"

        dispatcher = build_dispatcher(graph, _registry(FunctionAgent("worker", handler)))

        await dispatcher.run()

        assert violations == []
        assert all(status == TaskStatus.SUCCEEDED for status in graph.status_map().values())

    @pytest.mark.asyncio
    async def test_queue_full_defers_tasks(self, make_graph, build_dispatcher, fast_config):
        graph = make_graph(["a", "b", "c"])
        dispatcher = build_dispatcher(
            graph,
            _registry(EchoAgent("echo")),
            config=replace(fast_config, max_concurrent_tasks=1),
            capacity=1,
        )

        await dispatcher.run()

        assert all(status == TaskStatus.SUCCEEDED for status in graph.status_map().values())
        assert dispatcher.scheduler.stats().total_rejected >= 1

    @pytest.mark.asyncio
    async def test_result_stored_on_task(self, make_graph, build_dispatcher):
        graph = make_graph(["a"])
        graph.get_node("a").payload = {"prompt": "hello"}

        await build_dispatcher(graph, _registry(EchoAgent("echo"))).run()

        assert graph.get_node("a").result == {"agent": "echo", "task_id": "a", "echo": {"prompt": "hello"}}

    @pytest.mark.asyncio
    async def test_ready_scan_runs_once_for_chain(self, make_chain, build_dispatcher):
        graph = make_chain("a", "b", "c", "d", "e")
        graph.ready_tasks = MagicMock(wraps=graph.ready_tasks)

        await build_dispatcher(graph, _registry(EchoAgent("echo"))).run()

        assert all(status == TaskStatus.SUCCEEDED for status in graph.status_map().values())
        assert graph.ready_tasks.call_count == 1


class TestRetry:
    """Attempt failures, backoff and exhaustion"""

    @pytest.mark.asyncio
    async def test_retry_then_success(self, make_graph, build_dispatcher, event_sink):
        graph = make_graph(["flaky"])
        calls = 0

        async def handler(request):
            nonlocal calls
            calls += 1
            if calls < 3:
                raise RuntimeError(f"transient {calls}")
            return "done"

        dispatcher = build_dispatcher(graph, _registry(FunctionAgent("worker", handler)))

        attempts = await dispatcher.run()

        assert graph.get_node("flaky").status == TaskStatus.SUCCEEDED
        assert graph.get_node("flaky").attempts == 3
        assert [a.outcome for a in attempts] == [
            AttemptOutcome.FAILED,
            AttemptOutcome.FAILED,
            AttemptOutcome.SUCCEEDED,
        ]
        assert [a.attempt for a in attempts] == [1, 2, 3]
        assert len(event_sink.of_type(EventType.TASK_RETRYING)) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_graph, build_dispatcher, event_sink):
        graph = make_graph(["doomed"])

        async def handler(request):
            raise RuntimeError("provider error")

        dispatcher = build_dispatcher(graph, _registry(FunctionAgent("worker", handler)))

        attempts = await dispatcher.run()

        node = graph.get_node("doomed")
        assert node.status == TaskStatus.FAILED
        assert "provider error" in node.error
        assert len(attempts) == 3
        assert len(event_sink.of_type(EventType.TASK_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, build_dispatcher, fast_config):
        graph = TaskGraph()
        graph.add_task(TaskNode(name="slow", id="slow", timeout_seconds=0.05))
        config = replace(fast_config, retry=replace(fast_config.retry, max_attempts=1))
        dispatcher = build_dispatcher(graph, _registry(EchoAgent("sleepy", latency_seconds=5.0)), config=config)

        attempts = await dispatcher.run()

        assert graph.get_node("slow").status == TaskStatus.FAILED
        assert attempts[0].outcome == AttemptOutcome.TIMED_OUT
        assert "timed out" in graph.get_node("slow").error

    @pytest.mark.asyncio
    async def test_each_failure_reported_to_breaker(self, make_graph, build_dispatcher):
        graph = make_graph(["a"])
        breaker = CircuitBreaker()

        async def handler(request):
            raise RuntimeError("boom")

        dispatcher = build_dispatcher(graph, _registry(FunctionAgent("worker", handler)), breaker=breaker)

        await dispatcher.run()

        assert breaker.get_stats("worker").failure_count == 3

    @pytest.mark.asyncio
    async def test_synchronous_submit_error_is_retried(self, make_graph, build_dispatcher):
        graph = make_graph(["a"])
        breaker = CircuitBreaker()
        dispatcher = build_dispatcher(graph, _registry(_SyncSubmitAgent("sync")), breaker=breaker)

        attempts = await dispatcher.run()

        assert [a.outcome for a in attempts] == [AttemptOutcome.FAILED] * 3
        assert "not awaitable" in attempts[0].error
        assert graph.get_node("a").status == TaskStatus.FAILED
        assert breaker.get_stats("sync").failure_count == 3

    @pytest.mark.asyncio
    async def test_no_agent_fails_without_retry(self, make_chain, build_dispatcher):
        graph = make_chain("a", "b")

        attempts = await build_dispatcher(graph, AgentRegistry()).run()

        assert len(attempts) == 1
        assert attempts[0].outcome == AttemptOutcome.NO_AGENT
        assert attempts[0].agent_id is None
        assert graph.get_node("a").status == TaskStatus.FAILED
        assert graph.get_node("b").status == TaskStatus.SKIPPED


class TestCircuitBreaking:
    """Open circuits keep agents out of selection"""

    @pytest.mark.asyncio
    async def test_open_circuit_receives_no_dispatch(self, make_graph, build_dispatcher, fast_config, event_sink, emitter):
        graph = make_graph([f"t{i}" for i in range(8)])
        bad_calls = 0

        async def failing(request):
            nonlocal bad_calls
            bad_calls += 1
            raise RuntimeError("down")

        breaker = CircuitBreaker(fast_config.circuit)
        breaker.add_listener(emitter.on_circuit_transition)
        opened_at = []
        breaker.add_listener(
            lambda agent_id, old, new: opened_at.append(bad_calls) if new == CircuitState.OPEN else None
        )
        registry = _registry(FunctionAgent("bad", failing), EchoAgent("good"))
        config = replace(fast_config, max_concurrent_tasks=1)

        attempts = await build_dispatcher(graph, registry, config=config, breaker=breaker).run()

        assert breaker.get_state("bad") == CircuitState.OPEN
        assert opened_at == [3]
        assert bad_calls == 3
        assert sum(1 for a in attempts if a.agent_id == "bad") == 3
        assert all(status == TaskStatus.SUCCEEDED for status in graph.status_map().values())
        assert len(event_sink.of_type(EventType.CIRCUIT_OPENED)) == 1

    @pytest.mark.asyncio
    async def test_half_open_success_closes_circuit(self, make_graph, build_dispatcher, fast_config, clock, event_sink):
        breaker = CircuitBreaker(fast_config.circuit, clock=clock)
        for _ in range(fast_config.circuit.failure_threshold):
            breaker.record_failure("echo")
        clock.advance(fast_config.circuit.cooldown_seconds)
        graph = make_graph(["a"])

        await build_dispatcher(graph, _registry(EchoAgent("echo")), breaker=breaker).run()

        assert graph.get_node("a").status == TaskStatus.SUCCEEDED
        assert breaker.get_state("echo") == CircuitState.CLOSED
        assert event_sink.of_type(EventType.AGENT_SELECTED)[0].details["probe"] is True

    @pytest.mark.asyncio
    async def test_half_open_synchronous_error_frees_slot(self, make_graph, build_dispatcher, fast_config, clock):
        breaker = CircuitBreaker(fast_config.circuit, clock=clock)
        for _ in range(fast_config.circuit.failure_threshold):
            breaker.record_failure("sync")
        clock.advance(fast_config.circuit.cooldown_seconds)
        graph = make_graph(["a"])

        await build_dispatcher(graph, _registry(_SyncSubmitAgent("sync")), breaker=breaker).run()

        assert breaker.get_state("sync") == CircuitState.OPEN
        assert breaker.get_summary()["sync"]["probe_in_flight"] is False


class TestCancellation:
    """Cancel signals and late results"""

    @pytest.mark.asyncio
    async def test_cancel_running_task(self, make_chain, build_dispatcher):
        graph = make_chain("long", "after")
        started = asyncio.Event()

        async def handler(request):
            started.set()
            await asyncio.sleep(10)

        dispatcher = build_dispatcher(graph, _registry(FunctionAgent("worker", handler)))
        run = asyncio.create_task(dispatcher.run())

        await asyncio.wait_for(started.wait(), timeout=1.0)
        cancelled = dispatcher.cancel_task("long")
        attempts = await asyncio.wait_for(run, timeout=1.0)

        assert cancelled == ["long", "after"]
        assert graph.get_node("long").status == TaskStatus.CANCELLED
        assert graph.get_node("after").status == TaskStatus.CANCELLED
        assert attempts[0].outcome == AttemptOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_late_result_discarded(self, make_graph, build_dispatcher, fast_config):
        graph = make_graph(["a"])
        gate = asyncio.Event()

        async def handler(request):
            await gate.wait()
            return "late"

        dispatcher = build_dispatcher(graph, _registry(FunctionAgent("worker", handler)))
        dispatcher.scheduler.schedule(graph.get_node("a"))
        graph.mark_ready("a")

        async def cancel_then_release():
            await asyncio.sleep(0.01)
            graph.cancel("a")  # no signal reaches the in-flight call
            gate.set()

        attempt, _ = await asyncio.gather(
            dispatcher.dispatch(dispatcher.scheduler.next()),
            cancel_then_release(),
        )

        assert attempt.outcome == AttemptOutcome.DISCARDED
        assert graph.get_node("a").status == TaskStatus.CANCELLED
        assert graph.get_node("a").result is None

    @pytest.mark.asyncio
    async def test_cancel_all(self, make_graph, build_dispatcher, event_sink):
        graph = make_graph(["a", "b"])
        started = asyncio.Event()

        async def handler(request):
            started.set()
            await asyncio.sleep(10)

        dispatcher = build_dispatcher(graph, _registry(FunctionAgent("worker", handler)))
        run = asyncio.create_task(dispatcher.run())

        await asyncio.wait_for(started.wait(), timeout=1.0)
        dispatcher.cancel_all()
        await asyncio.wait_for(run, timeout=1.0)

        assert set(graph.status_map().values()) == {TaskStatus.CANCELLED}
        assert len(event_sink.of_type(EventType.TASK_CANCELLED)) == 2


class TestTelemetry:
    """Lifecycle events emitted during dispatch"""

    @pytest.mark.asyncio
    async def test_success_event_sequence(self, make_graph, build_dispatcher, event_sink):
        graph = make_graph(["a"])

        await build_dispatcher(graph, _registry(EchoAgent("echo"))).run()

        assert event_sink.types() == [
            EventType.TASK_SCHEDULED,
            EventType.TASK_STARTED,
            EventType.AGENT_SELECTED,
            EventType.TASK_SUCCEEDED,
        ]
        assert all(event.execution_id == "exec-test" for event in event_sink.events)
        assert event_sink.of_type(EventType.AGENT_SELECTED)[0].agent_id == "echo"

    @pytest.mark.asyncio
    async def test_skip_events(self, make_chain, build_dispatcher, event_sink):
        graph = make_chain("a", "b", "c")

        await build_dispatcher(graph, AgentRegistry()).run()

        assert [e.task_id for e in event_sink.of_type(EventType.TASK_SKIPPED)] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, make_graph, build_dispatcher, metrics):
        graph = make_graph(["a", "b"])

        await build_dispatcher(graph, _registry(EchoAgent("echo"))).run()

        assert metrics.get_counter("dispatch_attempts_total") == 2
        assert metrics.get_agent_stats("echo")["success_count"] == 2
        assert metrics.get_gauge("dispatch_in_flight") == 0
        assert metrics.get_histogram_stats("dispatch_latency_ms")["count"] == 2


async def _echo_task_id(request):
    return request.task_id


class _SyncSubmitAgent(EchoAgent):
    """Adapter whose submit() raises before producing an awaitable"""

    def submit(self, request):
        self.calls += 1
        raise TypeError("sync client is not awaitable")
