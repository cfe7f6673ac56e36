#!/usr/bin/env python3
"""
Orchestration Engine - graph execution boundary

Validates task graphs, runs each execution through its own Dispatcher and
exposes cancellation and status queries by execution id. The agent registry,
selector, circuit breaker, telemetry and metrics are shared by all executions.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..agents.circuit_breaker import CircuitBreaker
from ..agents.registry import AgentRegistry
from ..agents.selector import AgentSelector
from ..config import OrchestratorConfig
from ..errors import ExecutionNotFoundError, OrchestratorError, ValidationError
from ..metrics import MetricsCollector
from ..task_graph.dag import TaskGraph, TaskStatus, ValidationResult
from ..task_graph.scheduler import PriorityScheduler
from ..telemetry import EventType, TelemetryEmitter
from .dispatcher import DispatchAttempt, Dispatcher

logger = logging.getLogger(__name__)


class ExecutionOutcome(str, Enum):
    """Overall outcome of a graph execution"""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ExecutionReport:
    """Result of one graph execution"""
    execution_id: str
    graph_name: str
    outcome: ExecutionOutcome
    task_statuses: Dict[str, TaskStatus]
    failed_tasks: List[str]
    results: Dict[str, Any]
    errors: Dict[str, str]
    attempts: List[DispatchAttempt]
    validation: ValidationResult
    started_at: str
    finished_at: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == ExecutionOutcome.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "graph_name": self.graph_name,
            "outcome": self.outcome.value,
            "task_statuses": {task_id: status.value for task_id, status in self.task_statuses.items()},
            "failed_tasks": self.failed_tasks,
            "errors": self.errors,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "validation": self.validation.to_dict(),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass
class _Execution:
    execution_id: str
    graph: TaskGraph
    dispatcher: Dispatcher
    validation: ValidationResult
    started_at: str
    cancelled: bool = False
    report: Optional[ExecutionReport] = field(default=None)


class OrchestrationEngine:
    """
    Orchestration engine

    Responsibilities:
    - Validate graphs without raising (validate) or before running (execute)
    - Wire one Dispatcher per execution to the shared agent layer
    - Track executions for cancellation and status queries

    Example:
        registry = AgentRegistry()
        registry.register(EchoAgent("claude"))

        engine = OrchestrationEngine(registry)
        report = await engine.execute(graph)
    """

    def __init__(
        self,
        registry: AgentRegistry,
        config: Optional[OrchestratorConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        emitter: Optional[TelemetryEmitter] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.config.validate()

        self.registry = registry
        self.breaker = breaker or CircuitBreaker(self.config.circuit)
        self.emitter = emitter or TelemetryEmitter()
        self.metrics = metrics or MetricsCollector()
        self.selector = AgentSelector(
            registry,
            self.breaker,
            strategy=self.config.selection_strategy,
            seed=self.config.random_seed,
        )
        self.breaker.add_listener(self.emitter.on_circuit_transition)

        self._executions: Dict[str, _Execution] = {}

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, graph: TaskGraph) -> ValidationResult:
        """Validate a graph; structural problems are reported, not raised."""
        try:
            return self._validate_or_raise(graph)
        except ValidationError as e:
            return ValidationResult(valid=False, error=e.message, error_code=e.code)

    def _validate_or_raise(self, graph: TaskGraph) -> ValidationResult:
        result = graph.validate()
        limit = self.config.max_graph_depth
        if limit is not None and result.depth > limit:
            raise ValidationError(f"Graph depth {result.depth} exceeds the maximum of {limit}")
        return result

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, graph: TaskGraph, execution_id: Optional[str] = None) -> ExecutionReport:
        """
        Run a graph to completion.

        Raises:
            CycleError: If the graph contains a cycle (nothing is dispatched)
            ValidationError: If the graph is otherwise invalid or the
                execution id is already in use
        """
        validation = self._validate_or_raise(graph)

        execution_id = execution_id or f"exec_{uuid.uuid4().hex[:12]}"
        if execution_id in self._executions:
            raise ValidationError(f"Execution id already in use: {execution_id}")

        graph.freeze()
        await self.registry.refresh_if_stale(self.config.health_check_interval_seconds)

        dispatcher = Dispatcher(
            graph=graph,
            scheduler=PriorityScheduler(capacity=self.config.queue_capacity),
            selector=self.selector,
            breaker=self.breaker,
            registry=self.registry,
            config=self.config,
            emitter=self.emitter,
            metrics=self.metrics,
            execution_id=execution_id,
        )
        execution = _Execution(
            execution_id=execution_id,
            graph=graph,
            dispatcher=dispatcher,
            validation=validation,
            started_at=datetime.now().isoformat(),
        )
        self._executions[execution_id] = execution

        self.emitter.emit(
            EventType.EXECUTION_STARTED,
            execution_id=execution_id,
            graph=graph.name,
            tasks=len(graph),
            max_parallelism=validation.max_parallelism,
        )

        start = time.monotonic()
        try:
            await dispatcher.run()
        except BaseException:
            dispatcher.cancel_all()
            execution.cancelled = True
            raise
        finally:
            execution.report = self._build_report(execution, (time.monotonic() - start) * 1000)

        report = execution.report
        self.emitter.emit(
            EventType.EXECUTION_FINISHED,
            execution_id=execution_id,
            outcome=report.outcome.value,
            failed_tasks=report.failed_tasks,
            duration_ms=round(report.duration_ms, 3),
        )
        self.metrics.record_execution(report.outcome.value, report.duration_ms, len(graph))

        logger.info(
            f"Execution {execution_id} finished: {report.outcome.value} "
            f"in {report.duration_ms:.0f}ms"
        )
        return report

    def cancel(self, execution_id: str) -> bool:
        """
        Cancel a running execution.

        Returns:
            True if the execution was running, False if it already finished

        Raises:
            ExecutionNotFoundError: If the id is unknown
        """
        execution = self._get(execution_id)
        if execution.report is not None:
            return False

        execution.cancelled = True
        execution.dispatcher.cancel_all()
        logger.info(f"Execution {execution_id} cancelled")
        return True

    def cancel_task(self, execution_id: str, task_id: str) -> List[str]:
        """Cancel one task (and its downstream closure) inside a running execution."""
        execution = self._get(execution_id)
        if execution.report is not None:
            return []
        if task_id not in execution.graph:
            raise ValidationError(f"Task not found: {task_id}", task_id)
        return execution.dispatcher.cancel_task(task_id)

    def get_status(self, execution_id: str) -> Dict[str, Any]:
        """Consistent status view of an execution"""
        execution = self._get(execution_id)
        if execution.report is not None:
            return execution.report.to_dict()

        graph = execution.graph
        return {
            "execution_id": execution_id,
            "graph_name": graph.name,
            "outcome": ExecutionOutcome.RUNNING.value,
            "task_statuses": {task_id: status.value for task_id, status in graph.status_map().items()},
            "dispatch": execution.dispatcher.stats().to_dict(),
            "queue": execution.dispatcher.scheduler.stats().to_dict(),
            "started_at": execution.started_at,
        }

    def list_executions(self) -> List[str]:
        return list(self._executions)

    def forget(self, execution_id: str) -> None:
        """Drop a finished execution from the table."""
        execution = self._get(execution_id)
        if execution.report is None:
            raise OrchestratorError(
                f"Execution '{execution_id}' is still running",
                code="EXECUTION_RUNNING",
                details={"execution_id": execution_id},
            )
        del self._executions[execution_id]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get(self, execution_id: str) -> _Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def _build_report(self, execution: _Execution, duration_ms: float) -> ExecutionReport:
        graph = execution.graph
        statuses = graph.status_map()
        nodes = {node.id: node for node in graph.get_all_nodes()}

        failed = [task_id for task_id, status in statuses.items() if status == TaskStatus.FAILED]
        if execution.cancelled:
            outcome = ExecutionOutcome.CANCELLED
        elif failed or any(status == TaskStatus.CANCELLED for status in statuses.values()):
            outcome = ExecutionOutcome.FAILED
        else:
            outcome = ExecutionOutcome.SUCCEEDED

        return ExecutionReport(
            execution_id=execution.execution_id,
            graph_name=graph.name,
            outcome=outcome,
            task_statuses=statuses,
            failed_tasks=failed,
            results={
                task_id: node.result for task_id, node in nodes.items()
                if node.status == TaskStatus.SUCCEEDED
            },
            errors={
                task_id: node.error for task_id, node in nodes.items()
                if node.error and node.status != TaskStatus.SUCCEEDED
            },
            attempts=list(execution.dispatcher.attempts),
            validation=execution.validation,
            started_at=execution.started_at,
            finished_at=datetime.now().isoformat(),
            duration_ms=duration_ms,
        )
