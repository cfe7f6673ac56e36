"""
Priority scheduler for ready tasks.

Orders tasks by (priority descending, enqueue sequence ascending) inside a
bounded queue. Tasks coming back from a transient failure are parked until
their retry delay elapses and only then compete for dispatch again.
"""

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Any, List, Optional, Tuple

from ..errors import QueueFullError
from .dag import TaskNode

logger = logging.getLogger(__name__)


@dataclass(order=True)
class _ReadyEntry:
    sort_key: Tuple[int, int]
    task: TaskNode = field(compare=False)
    enqueued_at: float = field(compare=False)


@dataclass(order=True)
class _DelayedEntry:
    eligible_at: float
    sequence: int
    task: TaskNode = field(compare=False)
    enqueued_at: float = field(compare=False)


@dataclass
class QueueStats:
    """Scheduler statistics."""
    pending: int
    delayed: int
    capacity: int
    total_scheduled: int
    total_dequeued: int
    total_requeued: int
    total_rejected: int
    average_wait_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending": self.pending,
            "delayed": self.delayed,
            "capacity": self.capacity,
            "total_scheduled": self.total_scheduled,
            "total_dequeued": self.total_dequeued,
            "total_requeued": self.total_requeued,
            "total_rejected": self.total_rejected,
            "average_wait_ms": round(self.average_wait_ms, 3),
        }


class PriorityScheduler:
    """
    Bounded priority queue of ready tasks.

    Example:
        scheduler = PriorityScheduler(capacity=100)
        scheduler.schedule(task)

        task = scheduler.next()
        if task failed transiently:
            scheduler.requeue(task, delay=1.5)
    """

    def __init__(self, capacity: int = 1000, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            capacity: Maximum number of queued tasks (ready and delayed)
            clock: Monotonic time source in seconds
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._clock = clock
        self._ready: List[_ReadyEntry] = []
        self._delayed: List[_DelayedEntry] = []
        self._sequence = itertools.count()
        self._lock = threading.Lock()

        self._total_scheduled = 0
        self._total_dequeued = 0
        self._total_requeued = 0
        self._total_rejected = 0
        self._cumulative_wait = 0.0

    def __len__(self) -> int:
        with self._lock:
            return len(self._ready) + len(self._delayed)

    def schedule(self, task: TaskNode) -> None:
        """
        Enqueue a ready task.

        Raises:
            QueueFullError: If the queue holds `capacity` tasks already
        """
        with self._lock:
            if len(self._ready) + len(self._delayed) >= self.capacity:
                self._total_rejected += 1
                raise QueueFullError(self.capacity, task.id)

            self._push_ready(task, self._clock())
            self._total_scheduled += 1

        logger.debug(f"Scheduled task {task.id} with priority {task.priority.name}")

    def next(self) -> Optional[TaskNode]:
        """Pop the highest-priority eligible task, or None when nothing is eligible."""
        with self._lock:
            self._promote_matured()
            if not self._ready:
                return None

            entry = heapq.heappop(self._ready)
            wait = self._clock() - entry.enqueued_at
            self._cumulative_wait += wait
            self._total_dequeued += 1

        logger.debug(f"Dequeued task {entry.task.id} after {wait * 1000:.1f}ms wait")
        return entry.task

    def requeue(self, task: TaskNode, delay: float = 0.0) -> None:
        """
        Reinsert a task that becomes eligible only after `delay` seconds.

        Requeue is not bounded by capacity: the task already held a slot before
        it was dequeued.
        """
        now = self._clock()
        with self._lock:
            if delay <= 0:
                self._push_ready(task, now)
            else:
                heapq.heappush(
                    self._delayed,
                    _DelayedEntry(
                        eligible_at=now + delay,
                        sequence=next(self._sequence),
                        task=task,
                        enqueued_at=now,
                    ),
                )
            self._total_requeued += 1

        logger.debug(f"Requeued task {task.id} with delay {delay:.3f}s")

    def next_eligible_in(self) -> Optional[float]:
        """
        Seconds until a task can be dequeued.

        0.0 when a task is eligible now, None when the queue is empty.
        """
        with self._lock:
            if self._ready:
                return 0.0
            if not self._delayed:
                return None
            return max(self._delayed[0].eligible_at - self._clock(), 0.0)

    def stats(self) -> QueueStats:
        with self._lock:
            average_wait = (
                self._cumulative_wait / self._total_dequeued * 1000
                if self._total_dequeued else 0.0
            )
            return QueueStats(
                pending=len(self._ready),
                delayed=len(self._delayed),
                capacity=self.capacity,
                total_scheduled=self._total_scheduled,
                total_dequeued=self._total_dequeued,
                total_requeued=self._total_requeued,
                total_rejected=self._total_rejected,
                average_wait_ms=average_wait,
            )

    def _push_ready(self, task: TaskNode, enqueued_at: float) -> None:
        heapq.heappush(
            self._ready,
            _ReadyEntry(
                sort_key=(-int(task.priority), next(self._sequence)),
                task=task,
                enqueued_at=enqueued_at,
            ),
        )

    def _promote_matured(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0].eligible_at <= now:
            entry = heapq.heappop(self._delayed)
            self._push_ready(entry.task, entry.enqueued_at)
