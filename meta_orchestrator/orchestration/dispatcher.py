#!/usr/bin/env python3
"""
Dispatcher - concurrency-bounded task execution

Pulls ready tasks from the scheduler, selects an agent, calls it under a
timeout while racing the task's cancellation signal, and reports the outcome
back into the task graph.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..agents.circuit_breaker import CallPermit, CircuitBreaker
from ..agents.registry import AgentRegistry
from ..agents.selector import AgentSelector
from ..agents.types import AgentRequest
from ..config import OrchestratorConfig
from ..errors import (
    AgentCallError,
    AgentUnavailableError,
    OrchestratorError,
    QueueFullError,
    TaskTimeoutError,
)
from ..metrics import MetricsCollector
from ..task_graph.dag import TaskGraph, TaskNode, TaskStatus, TerminalUpdate
from ..task_graph.scheduler import PriorityScheduler
from ..telemetry import EventType, TelemetryEmitter

logger = logging.getLogger(__name__)


class AttemptOutcome(str, Enum):
    """Outcome of one dispatch attempt"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    DISCARDED = "discarded"    # result arrived for a task that was already cancelled
    NO_AGENT = "no_agent"


@dataclass
class DispatchAttempt:
    """Record of one call made (or refused) on behalf of a task"""
    task_id: str
    attempt: int
    agent_id: Optional[str]
    outcome: AttemptOutcome
    started_at: str
    finished_at: str
    latency_ms: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "attempt": self.attempt,
            "agent_id": self.agent_id,
            "outcome": self.outcome.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "latency_ms": round(self.latency_ms, 3),
            "error": self.error,
        }


@dataclass
class DispatchStats:
    """Admission gate statistics"""
    active: int
    capacity: int
    available: int
    utilization: float
    peak_active: int
    total_attempts: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "capacity": self.capacity,
            "available": self.available,
            "utilization": round(self.utilization, 4),
            "peak_active": self.peak_active,
            "total_attempts": self.total_attempts,
        }


@dataclass
class _AttemptContext:
    task: TaskNode
    attempt_no: int
    started_at: str
    timer_id: str
    agent_id: Optional[str] = None
    permit: Optional[CallPermit] = None


def _as_call_error(agent_id: str, exc: BaseException) -> OrchestratorError:
    if isinstance(exc, OrchestratorError):
        return exc
    return AgentCallError(agent_id, str(exc) or type(exc).__name__)


class Dispatcher:
    """
    Dispatcher for one graph execution.

    Responsibilities:
    - Admit at most `max_concurrent_tasks` dispatches at a time
    - Select an agent and call it under the task's timeout
    - Retry transient failures with exponential backoff through the scheduler
    - Report every attempt to the agent's circuit breaker
    - Feed tasks unlocked by a terminal transition back into the scheduler

    Example:
        dispatcher = Dispatcher(graph, scheduler, selector, breaker, registry, config)
        attempts = await dispatcher.run()
    """

    def __init__(
        self,
        graph: TaskGraph,
        scheduler: PriorityScheduler,
        selector: AgentSelector,
        breaker: CircuitBreaker,
        registry: AgentRegistry,
        config: Optional[OrchestratorConfig] = None,
        emitter: Optional[TelemetryEmitter] = None,
        metrics: Optional[MetricsCollector] = None,
        execution_id: Optional[str] = None,
    ):
        self.graph = graph
        self.scheduler = scheduler
        self.selector = selector
        self.breaker = breaker
        self.registry = registry
        self.config = config or OrchestratorConfig()
        self.emitter = emitter or TelemetryEmitter()
        self.metrics = metrics or MetricsCollector()
        self.execution_id = execution_id

        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_tasks)
        self._rng = random.Random(self.config.random_seed)
        self._active: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._wakeup = asyncio.Event()
        self._needs_rescan = True
        self._in_flight = 0
        self._peak_in_flight = 0
        self.attempts: List[DispatchAttempt] = []

    # =========================================================================
    # Pull loop
    # =========================================================================

    async def run(self) -> List[DispatchAttempt]:
        """
        Drive the graph to completion.

        Seeds the scheduler with every ready task, then admits work under the
        semaphore until every task is terminal. Between admissions the loop
        sleeps until a dispatch finishes or a delayed retry matures.

        Returns:
            Every dispatch attempt made, in completion order
        """
        logger.info(
            f"Dispatching graph '{self.graph.name}' "
            f"({len(self.graph)} task(s), max_concurrent={self.config.max_concurrent_tasks})"
        )

        try:
            while not self.graph.is_finished():
                self._wakeup.clear()
                if self._needs_rescan:
                    self._schedule_ready()

                wait = self.scheduler.next_eligible_in()
                if wait == 0.0 and not self._semaphore.locked():
                    await self._semaphore.acquire()
                    task = self.scheduler.next()
                    if task is None:
                        self._semaphore.release()
                        continue
                    self._active[task.id] = asyncio.create_task(self._run_admitted(task))
                    continue

                if wait is None and not self._active:
                    if self.graph.ready_tasks():
                        self._needs_rescan = True
                        continue
                    self._abort_stalled()
                    break

                timeout = wait if wait else None
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

            if self._active:
                await asyncio.gather(*self._active.values(), return_exceptions=True)
        finally:
            for pending in list(self._active.values()):
                if not pending.done():
                    pending.cancel()

        logger.info(f"Graph '{self.graph.name}' finished: {self.graph.get_stats()['status_counts']}")
        return list(self.attempts)

    async def dispatch(self, task: TaskNode) -> Optional[DispatchAttempt]:
        """
        Run one attempt of a READY task under the admission gate.

        Returns:
            The attempt record, or None when the task was no longer READY
        """
        async with self._semaphore:
            return await self._admitted(task)

    async def _run_admitted(self, task: TaskNode) -> None:
        try:
            await self._admitted(task)
        except Exception as e:
            logger.exception(f"Unexpected error dispatching task {task.id}: {e}")
            update = self.graph.mark_terminal(task.id, TaskStatus.FAILED, error=str(e))
            if update.applied:
                self._emit(EventType.TASK_FAILED, task, error=str(e))
                self._apply_update(update)
        finally:
            self._semaphore.release()
            self._active.pop(task.id, None)
            self._wakeup.set()

    async def _admitted(self, task: TaskNode) -> Optional[DispatchAttempt]:
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        self.metrics.set_gauge("dispatch_in_flight", self._in_flight)
        try:
            return await self._attempt(task)
        finally:
            self._in_flight -= 1
            self.metrics.set_gauge("dispatch_in_flight", self._in_flight)

    # =========================================================================
    # Single attempt
    # =========================================================================

    async def _attempt(self, task: TaskNode) -> Optional[DispatchAttempt]:
        if not self.graph.mark_running(task.id):
            logger.debug(f"Task {task.id} is {task.status.value}; not dispatching")
            return None

        ctx = _AttemptContext(
            task=task,
            attempt_no=task.attempts,
            started_at=datetime.now().isoformat(),
            timer_id=self.metrics.start_timer("dispatch_latency_ms"),
        )
        self._emit(EventType.TASK_STARTED, task)

        try:
            selection = self.selector.select(task)
        except AgentUnavailableError as e:
            logger.warning(f"No agent for task {task.id}: {e.message}")
            attempt = self._record(ctx, AttemptOutcome.NO_AGENT, e.message)
            self._finish(task, TaskStatus.FAILED, error=e.message)
            return attempt

        ctx.agent_id = selection.agent_id
        ctx.permit = selection.permit
        self._emit(
            EventType.AGENT_SELECTED, task, agent_id=ctx.agent_id,
            strategy=self.selector.strategy.value, probe=ctx.permit.probe,
        )

        try:
            return await self._call(ctx)
        except BaseException:
            self.breaker.release(ctx.agent_id, ctx.permit)
            self.metrics.discard_timer(ctx.timer_id)
            raise

    async def _call(self, ctx: _AttemptContext) -> DispatchAttempt:
        task, agent_id = ctx.task, ctx.agent_id
        timeout = task.timeout_seconds if task.timeout_seconds is not None else self.config.default_timeout_seconds
        cancel_event = self._cancel_events.setdefault(task.id, asyncio.Event())
        agent = self.registry.get_agent(agent_id)

        if agent is None:
            return self._fail(ctx, AttemptOutcome.FAILED, AgentCallError(agent_id, "agent was unregistered"))

        request = AgentRequest(
            task_id=task.id,
            task_name=task.name,
            payload=task.payload,
            attempt=ctx.attempt_no,
            timeout_seconds=timeout,
            execution_id=self.execution_id,
            required_capabilities=frozenset(task.required_capabilities),
            metadata=dict(task.metadata),
        )

        try:
            call = asyncio.ensure_future(agent.submit(request))
        except Exception as e:
            logger.warning(f"Agent {agent_id} rejected task {task.id} before running: {e!r}")
            return self._fail(ctx, AttemptOutcome.FAILED, _as_call_error(agent_id, e))

        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancelled},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for future in (call, cancelled):
                if not future.done():
                    future.cancel()

        if call in done and not call.cancelled():
            exc = call.exception()
            if exc is None:
                return self._succeed(ctx, call.result())
            return self._fail(ctx, AttemptOutcome.FAILED, _as_call_error(agent_id, exc))

        if cancelled in done:
            self.breaker.release(agent_id, ctx.permit)
            logger.info(f"Task {task.id} cancelled while agent {agent_id} was running")
            return self._record(ctx, AttemptOutcome.CANCELLED, "Cancelled")

        if call in done:
            error = AgentCallError(agent_id, "call was cancelled by the adapter")
            return self._fail(ctx, AttemptOutcome.FAILED, error)

        return self._fail(ctx, AttemptOutcome.TIMED_OUT, TaskTimeoutError(task.id, timeout, agent_id))

    def _succeed(self, ctx: _AttemptContext, result: Any) -> DispatchAttempt:
        task, agent_id = ctx.task, ctx.agent_id
        self.breaker.record_success(agent_id, ctx.permit)

        update = self.graph.mark_terminal(task.id, TaskStatus.SUCCEEDED, result=result)
        if not update.applied:
            logger.info(f"Discarding late result for task {task.id} ({update.status.value})")
            attempt = self._record(
                ctx, AttemptOutcome.DISCARDED,
                f"Result discarded: task already {update.status.value}",
            )
            self.registry.record_latency(agent_id, attempt.latency_ms)
            return attempt

        attempt = self._record(ctx, AttemptOutcome.SUCCEEDED)
        self.registry.record_latency(agent_id, attempt.latency_ms)
        self._emit(EventType.TASK_SUCCEEDED, task, agent_id=agent_id, latency_ms=round(attempt.latency_ms, 3))
        self._apply_update(update)
        return attempt

    def _fail(self, ctx: _AttemptContext, outcome: AttemptOutcome, error: OrchestratorError) -> DispatchAttempt:
        task, agent_id, attempt_no = ctx.task, ctx.agent_id, ctx.attempt_no
        self.breaker.record_failure(agent_id, ctx.permit)

        if task.is_terminal:
            return self._record(ctx, AttemptOutcome.DISCARDED, error.message)

        attempt = self._record(ctx, outcome, error.message)
        max_attempts = self.config.retry.max_attempts

        if error.retryable and attempt_no < max_attempts and self.graph.mark_retrying(task.id, error.message):
            delay = self.config.retry.compute_delay(attempt_no, self._rng)
            self.scheduler.requeue(task, delay)
            logger.warning(
                f"Task {task.id} failed (attempt {attempt_no}/{max_attempts}) on {agent_id}: "
                f"{error.message}; retrying in {delay:.3f}s"
            )
            self._emit(
                EventType.TASK_RETRYING, task, agent_id=agent_id,
                error=error.message, delay_seconds=round(delay, 3),
            )
            return attempt

        logger.error(f"Task {task.id} failed after {attempt_no} attempt(s): {error.message}")
        self._finish(task, TaskStatus.FAILED, error=error.message, agent_id=agent_id)
        return attempt

    def _finish(
        self,
        task: TaskNode,
        status: TaskStatus,
        error: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> TerminalUpdate:
        update = self.graph.mark_terminal(task.id, status, error=error)
        if update.applied:
            self._emit(EventType.TASK_FAILED, task, agent_id=agent_id, error=error)
            self._apply_update(update)
        return update

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel_task(self, task_id: str) -> List[str]:
        """
        Cancel a task and its non-terminal downstream closure.

        In-flight calls get a cancellation signal; a result that still arrives
        is discarded.

        Returns:
            Ids of the tasks that became CANCELLED
        """
        cancelled = self.graph.cancel(task_id)
        self._signal_cancelled(cancelled)
        return cancelled

    def cancel_all(self) -> List[str]:
        """Cancel every non-terminal task."""
        cancelled = self.graph.cancel_all()
        self._signal_cancelled(cancelled)
        return cancelled

    def _signal_cancelled(self, task_ids: List[str]) -> None:
        for task_id in task_ids:
            event = self._cancel_events.get(task_id)
            if event is not None:
                event.set()
            node = self.graph.get_node(task_id)
            self._emit(EventType.TASK_CANCELLED, node)
        if task_ids:
            logger.info(f"Cancelled {len(task_ids)} task(s): {task_ids}")
        self._wakeup.set()

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _schedule_ready(self) -> None:
        """Full scan for ready tasks; needed at start and after a deferral."""
        self._needs_rescan = False
        ready = self.graph.ready_tasks()
        if not ready:
            return
        for node in self.graph.get_all_nodes():
            if node.id in ready and not self._enqueue(node):
                break

    def _enqueue(self, task: TaskNode) -> bool:
        try:
            self.scheduler.schedule(task)
        except QueueFullError as e:
            # stays PENDING until the next full scan
            self._needs_rescan = True
            logger.warning(f"Deferring task {task.id}: {e.message}")
            return False

        self.graph.mark_ready(task.id)
        self._emit(EventType.TASK_SCHEDULED, task, priority=task.priority.name.lower())
        return True

    def _apply_update(self, update: TerminalUpdate) -> None:
        for task_id in update.skipped:
            node = self.graph.get_node(task_id)
            self._emit(EventType.TASK_SKIPPED, node, reason=node.error)

        for task_id in update.newly_ready:
            node = self.graph.get_node(task_id)
            if node.status == TaskStatus.PENDING and not self._enqueue(node):
                break

    def _abort_stalled(self) -> None:
        remaining = [
            task_id for task_id, status in self.graph.status_map().items()
            if not status.is_terminal
        ]
        logger.error(f"Dispatch stalled with non-terminal tasks {remaining}; cancelling them")
        self.cancel_all()

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def _record(
        self,
        ctx: _AttemptContext,
        outcome: AttemptOutcome,
        error: Optional[str] = None,
    ) -> DispatchAttempt:
        latency_ms = self.metrics.stop_timer(ctx.timer_id) or 0.0
        attempt = DispatchAttempt(
            task_id=ctx.task.id,
            attempt=ctx.attempt_no,
            agent_id=ctx.agent_id,
            outcome=outcome,
            started_at=ctx.started_at,
            finished_at=datetime.now().isoformat(),
            latency_ms=latency_ms,
            error=error,
        )
        self.attempts.append(attempt)
        self.metrics.record_dispatch_attempt(ctx.agent_id, outcome.value, latency_ms)
        return attempt

    def _emit(
        self,
        event_type: EventType,
        task: Optional[TaskNode],
        agent_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        self.emitter.emit(
            event_type,
            execution_id=self.execution_id,
            task_id=task.id if task else None,
            agent_id=agent_id,
            attempt=task.attempts if task else None,
            **details,
        )

    def stats(self) -> DispatchStats:
        capacity = self.config.max_concurrent_tasks
        active = self._in_flight
        return DispatchStats(
            active=active,
            capacity=capacity,
            available=max(capacity - active, 0),
            utilization=active / capacity if capacity else 0.0,
            peak_active=self._peak_in_flight,
            total_attempts=len(self.attempts),
        )
