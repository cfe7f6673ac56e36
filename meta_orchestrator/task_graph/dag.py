"""
Directed Acyclic Graph (DAG) for task management.
Represents tasks, conditional dependency edges and per-task execution state.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from ..errors import CycleError, ValidationError

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Status of a task node."""
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TaskStatus.SUCCEEDED,
    TaskStatus.FAILED,
    TaskStatus.SKIPPED,
    TaskStatus.CANCELLED,
})


class EdgeCondition(str, Enum):
    """Rule deciding whether a successor may run given its predecessor's outcome."""
    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"

    def is_satisfied_by(self, status: TaskStatus) -> bool:
        """Check a terminal predecessor status against this condition."""
        if not status.is_terminal:
            return False
        if self is EdgeCondition.ON_SUCCESS:
            return status == TaskStatus.SUCCEEDED
        if self is EdgeCondition.ON_FAILURE:
            return status == TaskStatus.FAILED
        return True


class Priority(IntEnum):
    """Task priority; higher values are dispatched first."""
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: Union[str, int, "Priority"]) -> "Priority":
        """Accept a Priority, its integer value or its case-insensitive name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown priority: {value!r}") from None


@dataclass(frozen=True)
class Edge:
    """Dependency edge: `target` waits on `source` under `condition`."""
    source: str
    target: str
    condition: EdgeCondition = EdgeCondition.ON_SUCCESS

    def to_dict(self) -> Dict[str, str]:
        return {
            "source": self.source,
            "target": self.target,
            "condition": self.condition.value,
        }


@dataclass
class TaskNode:
    """
    A node in the task graph.

    Represents a single unit of work with its scheduling attributes and
    execution state. The payload is opaque to the orchestrator and is handed
    to the selected agent unchanged.
    """
    name: str
    id: str = field(default_factory=lambda: f"task_{uuid.uuid4().hex[:8]}")
    description: str = ""
    priority: Priority = Priority.MEDIUM
    payload: Any = None
    required_capabilities: Set[str] = field(default_factory=set)
    timeout_seconds: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "priority": self.priority.name.lower(),
            "required_capabilities": sorted(self.required_capabilities),
            "timeout_seconds": self.timeout_seconds,
            "metadata": self.metadata,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


# Short alias used throughout the engine
Task = TaskNode


@dataclass(frozen=True)
class ValidationResult:
    """
    Outcome of graph validation.

    `levels` is the Kahn leveling of the graph: each level holds the tasks
    whose predecessors all sit in earlier levels, in insertion order. It bounds
    achievable parallelism and is never used to serialize execution.
    """
    valid: bool
    levels: Tuple[Tuple[str, ...], ...] = ()
    max_parallelism: int = 0
    depth: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "levels": [list(level) for level in self.levels],
            "max_parallelism": self.max_parallelism,
            "depth": self.depth,
            "error": self.error,
            "error_code": self.error_code,
        }


@dataclass
class TerminalUpdate:
    """What changed when a task reached a terminal state."""
    task_id: str
    status: TaskStatus
    applied: bool
    newly_ready: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class TaskGraph:
    """
    Directed Acyclic Graph for task management.

    Nodes live in an id-addressed table; edges are kept in per-node incoming
    and outgoing adjacency lists. All status transitions and readers go through
    a single re-entrant lock, so a concurrent reader never observes a task
    mid-transition.

    Example:
        graph = TaskGraph()

        analyze = graph.add_task(TaskNode(name="analyze", id="analyze"))
        design = graph.add_task(TaskNode(name="design", id="design"))
        graph.add_dependency(analyze, design)

        result = graph.validate()
    """

    def __init__(self, name: Optional[str] = None, max_depth: Optional[int] = None):
        """
        Initialize the task graph.

        Args:
            name: Graph name used in logs and reports
            max_depth: Optional limit on the longest dependency chain (in edges)
        """
        self.name = name or f"graph_{uuid.uuid4().hex[:8]}"
        self.max_depth = max_depth
        self._nodes: Dict[str, TaskNode] = {}
        self._incoming: Dict[str, List[Edge]] = {}
        self._outgoing: Dict[str, List[Edge]] = {}
        self._lock = threading.RLock()
        self._frozen = False

    # =========================================================================
    # Construction
    # =========================================================================

    def add_task(self, task: TaskNode) -> str:
        """
        Add a task to the graph.

        Returns:
            Task ID

        Raises:
            ValidationError: If the id is already taken, the timeout is not
                positive or execution started
        """
        if task.timeout_seconds is not None and task.timeout_seconds <= 0:
            raise ValidationError(
                f"Task {task.id} timeout must be positive, got {task.timeout_seconds}", task.id
            )

        with self._lock:
            self._ensure_mutable()
            if task.id in self._nodes:
                raise ValidationError(f"Duplicate task id: {task.id}", task.id)

            self._nodes[task.id] = task
            self._incoming[task.id] = []
            self._outgoing[task.id] = []

        logger.debug(f"Added task {task.id}: {task.name}")
        return task.id

    def add_dependency(
        self,
        source: str,
        target: str,
        condition: EdgeCondition = EdgeCondition.ON_SUCCESS,
    ) -> Edge:
        """
        Make `target` depend on `source`.

        Cycles are not checked here; `validate()` rejects them.

        Raises:
            ValidationError: If either task doesn't exist or the edge is duplicated
        """
        with self._lock:
            self._ensure_mutable()
            if source not in self._nodes:
                raise ValidationError(f"Dependency source task not found: {source}", source)
            if target not in self._nodes:
                raise ValidationError(f"Dependency target task not found: {target}", target)
            if any(edge.source == source for edge in self._incoming[target]):
                raise ValidationError(
                    f"Duplicate dependency: {source} -> {target}", target
                )

            edge = Edge(source=source, target=target, condition=EdgeCondition(condition))
            self._outgoing[source].append(edge)
            self._incoming[target].append(edge)

        return edge

    def freeze(self) -> None:
        """Disallow further structural changes (called when execution starts)."""
        with self._lock:
            self._frozen = True

    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise ValidationError(f"Graph '{self.name}' is executing and can no longer change")

    # =========================================================================
    # Queries
    # =========================================================================

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._nodes

    def get_node(self, task_id: str) -> Optional[TaskNode]:
        """Get a task node by ID."""
        return self._nodes.get(task_id)

    def get_all_nodes(self) -> List[TaskNode]:
        """Get all task nodes in insertion order."""
        with self._lock:
            return list(self._nodes.values())

    def predecessors(self, task_id: str) -> List[Edge]:
        """Incoming edges of a task, in insertion order."""
        with self._lock:
            return list(self._incoming.get(task_id, []))

    def successors(self, task_id: str) -> List[Edge]:
        """Outgoing edges of a task, in insertion order."""
        with self._lock:
            return list(self._outgoing.get(task_id, []))

    def edges(self) -> List[Edge]:
        with self._lock:
            return [edge for edges in self._outgoing.values() for edge in edges]

    def ready_tasks(self) -> Set[str]:
        """Pending tasks whose every incoming edge condition is already satisfied."""
        with self._lock:
            return {
                task_id for task_id, node in self._nodes.items()
                if node.status == TaskStatus.PENDING and self._is_satisfied(task_id)
            }

    def status_map(self) -> Dict[str, TaskStatus]:
        with self._lock:
            return {task_id: node.status for task_id, node in self._nodes.items()}

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Consistent copy of every node's state."""
        with self._lock:
            return {task_id: node.to_dict() for task_id, node in self._nodes.items()}

    def is_finished(self) -> bool:
        """True once every task reached a terminal state."""
        with self._lock:
            return all(node.is_terminal for node in self._nodes.values())

    def count_by_status(self, status: TaskStatus) -> int:
        with self._lock:
            return sum(1 for node in self._nodes.values() if node.status == status)

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self) -> ValidationResult:
        """
        Validate structure and compute the topological leveling.

        Cycle detection is an iterative depth-first traversal with three-color
        marking; a back-edge to a GRAY node is a cycle.

        Raises:
            CycleError: If a cycle exists
            ValidationError: If an edge is dangling or max_depth is exceeded
        """
        with self._lock:
            for edge in self.edges():
                if edge.source not in self._nodes or edge.target not in self._nodes:
                    raise ValidationError(
                        f"Edge references unknown task: {edge.source} -> {edge.target}"
                    )

            self._detect_cycle()
            levels = self._compute_levels()

        depth = max(len(levels) - 1, 0)
        if self.max_depth is not None and depth > self.max_depth:
            raise ValidationError(
                f"Graph depth {depth} exceeds the maximum of {self.max_depth}"
            )

        return ValidationResult(
            valid=True,
            levels=levels,
            max_parallelism=max((len(level) for level in levels), default=0),
            depth=depth,
        )

    def topological_order(self) -> List[str]:
        """Task ids in a dependency-respecting order (flattened leveling)."""
        return [task_id for level in self.validate().levels for task_id in level]

    def _detect_cycle(self) -> None:
        white, gray, black = 0, 1, 2
        color = {task_id: white for task_id in self._nodes}

        for root in self._nodes:
            if color[root] != white:
                continue

            color[root] = gray
            path = [root]
            stack = [iter([e.target for e in self._outgoing[root]])]

            while stack:
                advanced = False
                for nxt in stack[-1]:
                    if color[nxt] == gray:
                        cycle = path[path.index(nxt):] + [nxt]
                        logger.warning(f"Cycle detected in graph '{self.name}': {cycle}")
                        raise CycleError(nxt, cycle)
                    if color[nxt] == white:
                        color[nxt] = gray
                        path.append(nxt)
                        stack.append(iter([e.target for e in self._outgoing[nxt]]))
                        advanced = True
                        break

                if not advanced:
                    color[path.pop()] = black
                    stack.pop()

    def _compute_levels(self) -> Tuple[Tuple[str, ...], ...]:
        # Kahn's algorithm, one level per round of zero in-degree removals
        order = {task_id: index for index, task_id in enumerate(self._nodes)}
        in_degree = {task_id: len(self._incoming[task_id]) for task_id in self._nodes}

        current = [task_id for task_id, degree in in_degree.items() if degree == 0]
        levels = []
        while current:
            levels.append(tuple(current))
            following = []
            for task_id in current:
                for edge in self._outgoing[task_id]:
                    in_degree[edge.target] -= 1
                    if in_degree[edge.target] == 0:
                        following.append(edge.target)
            current = sorted(following, key=order.__getitem__)

        return tuple(levels)

    # =========================================================================
    # Status transitions
    # =========================================================================

    def mark_ready(self, task_id: str) -> bool:
        """PENDING -> READY once the task has been queued."""
        with self._lock:
            node = self._require(task_id)
            if node.status != TaskStatus.PENDING:
                return False
            node.status = TaskStatus.READY
            return True

    def mark_running(self, task_id: str) -> bool:
        """READY -> RUNNING at the start of an attempt."""
        with self._lock:
            node = self._require(task_id)
            if node.status != TaskStatus.READY:
                return False
            node.status = TaskStatus.RUNNING
            node.attempts += 1
            if not node.started_at:
                node.started_at = datetime.now()
            return True

    def mark_retrying(self, task_id: str, error: Optional[str] = None) -> bool:
        """RUNNING -> READY after a transient failure that will be retried."""
        with self._lock:
            node = self._require(task_id)
            if node.status != TaskStatus.RUNNING:
                return False
            node.status = TaskStatus.READY
            node.error = error
            return True

    def mark_terminal(
        self,
        task_id: str,
        outcome: TaskStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> TerminalUpdate:
        """
        Move a task to a terminal state and re-evaluate its successors.

        A successor whose incoming edge can no longer be satisfied (for example
        an ON_SUCCESS edge from a failed task) is skipped together with its
        whole non-terminal downstream closure. Successors whose edges are now
        all satisfied are reported as newly ready.

        Marking an already-terminal task changes nothing and returns
        `applied=False`.
        """
        outcome = TaskStatus(outcome)
        if not outcome.is_terminal:
            raise ValidationError(f"{outcome.value} is not a terminal status", task_id)

        with self._lock:
            node = self._require(task_id)
            if node.is_terminal:
                logger.debug(
                    f"Ignoring {outcome.value} for task {task_id}: already {node.status.value}"
                )
                return TerminalUpdate(task_id=task_id, status=node.status, applied=False)

            self._set_terminal(node, outcome, result=result, error=error)
            update = TerminalUpdate(task_id=task_id, status=outcome, applied=True)

            for edge in self._outgoing[task_id]:
                successor = self._nodes[edge.target]
                if successor.is_terminal:
                    continue
                if not edge.condition.is_satisfied_by(outcome):
                    update.skipped.extend(
                        self._close_downstream(
                            edge.target,
                            TaskStatus.SKIPPED,
                            f"Upstream task '{task_id}' ended {outcome.value}; "
                            f"edge requires {edge.condition.value}",
                        )
                    )

            for edge in self._outgoing[task_id]:
                successor = self._nodes[edge.target]
                if successor.status == TaskStatus.PENDING and self._is_satisfied(edge.target):
                    if edge.target not in update.newly_ready:
                        update.newly_ready.append(edge.target)

        return update

    def cancel(self, task_id: str) -> List[str]:
        """
        Cancel a task and its non-terminal downstream closure.

        A running task is marked CANCELLED immediately; the dispatcher discards
        whatever result its in-flight call produces later.

        Returns:
            Ids of every task that transitioned to CANCELLED
        """
        with self._lock:
            node = self._require(task_id)
            if node.is_terminal:
                return []
            return self._close_downstream(task_id, TaskStatus.CANCELLED, "Cancelled")

    def cancel_all(self) -> List[str]:
        """Cancel every non-terminal task."""
        with self._lock:
            cancelled = []
            for node in self._nodes.values():
                if not node.is_terminal:
                    self._set_terminal(node, TaskStatus.CANCELLED, error="Cancelled")
                    cancelled.append(node.id)
            return cancelled

    # =========================================================================
    # Internals (callers hold the lock)
    # =========================================================================

    def _require(self, task_id: str) -> TaskNode:
        node = self._nodes.get(task_id)
        if node is None:
            raise ValidationError(f"Task not found: {task_id}", task_id)
        return node

    def _is_satisfied(self, task_id: str) -> bool:
        for edge in self._incoming[task_id]:
            if not edge.condition.is_satisfied_by(self._nodes[edge.source].status):
                return False
        return True

    def _set_terminal(
        self,
        node: TaskNode,
        status: TaskStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> None:
        node.status = status
        node.completed_at = datetime.now()
        if result is not None:
            node.result = result
        if error is not None:
            node.error = error

    def _close_downstream(self, start: str, status: TaskStatus, reason: str) -> List[str]:
        closed = []
        stack = [start]
        while stack:
            task_id = stack.pop()
            node = self._nodes[task_id]
            if node.is_terminal:
                continue
            self._set_terminal(node, status, error=reason)
            closed.append(task_id)
            stack.extend(edge.target for edge in reversed(self._outgoing[task_id]))
        return closed

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the graph."""
        with self._lock:
            status_counts = {}
            for status in TaskStatus:
                status_counts[status.value] = sum(
                    1 for node in self._nodes.values()
                    if node.status == status
                )

            return {
                "total_tasks": len(self._nodes),
                "total_edges": sum(len(edges) for edges in self._outgoing.values()),
                "status_counts": status_counts,
                "graph_name": self.name,
            }

    def to_dict(self) -> Dict[str, Any]:
        """Convert graph to dictionary."""
        with self._lock:
            return {
                "name": self.name,
                "nodes": self.snapshot(),
                "edges": [edge.to_dict() for edge in self.edges()],
                "stats": self.get_stats(),
            }

    def visualize_dot(self) -> str:
        """
        Generate DOT format for visualization with Graphviz.

        Returns:
            DOT format string
        """
        lines = ["digraph TaskGraph {"]
        lines.append("  rankdir=TB;")
        lines.append("  node [shape=box];")

        with self._lock:
            for node in self._nodes.values():
                color = {
                    TaskStatus.PENDING: "lightgray",
                    TaskStatus.READY: "yellow",
                    TaskStatus.RUNNING: "lightblue",
                    TaskStatus.SUCCEEDED: "lightgreen",
                    TaskStatus.FAILED: "red",
                    TaskStatus.SKIPPED: "orange",
                    TaskStatus.CANCELLED: "gray",
                }.get(node.status, "white")

                label = f"{node.name}\\n({node.status.value})"
                lines.append(f'  "{node.id}" [label="{label}", fillcolor="{color}", style=filled];')

            for edge in self.edges():
                style = {
                    EdgeCondition.ON_SUCCESS: "solid",
                    EdgeCondition.ON_FAILURE: "dashed",
                    EdgeCondition.ALWAYS: "dotted",
                }[edge.condition]
                lines.append(f'  "{edge.source}" -> "{edge.target}" [style={style}];')

        lines.append("}")
        return "\n".join(lines)
