#!/usr/bin/env python3
"""
Metrics Collector - in-process dispatch metrics

Collects counters, gauges and latency histograms for dispatch attempts and
graph executions. Exporting is left to the embedding application.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional


class MetricType(str, Enum):
    """Metric type"""
    COUNTER = "counter"       # monotonically increasing
    GAUGE = "gauge"           # current value
    HISTOGRAM = "histogram"   # distribution
    TIMER = "timer"           # elapsed time


@dataclass
class MetricEntry:
    """Metric entry"""
    name: str
    value: float
    timestamp: datetime
    labels: Dict[str, str] = field(default_factory=dict)
    metric_type: MetricType = MetricType.GAUGE


@dataclass
class TimerContext:
    """Timer context"""
    start_time: float
    name: str
    labels: Dict[str, str]


class MetricsCollector:
    """
    Metrics collector

    Responsibilities:
    - Count dispatch attempts per agent and outcome
    - Track attempt latency distributions
    - Expose the in-flight gauge and execution outcomes
    """

    def __init__(
        self,
        retention_hours: int = 24,
        max_samples: int = 1000,
        max_entries: int = 10000,
    ):
        """
        Args:
            retention_hours: How long raw metric entries are kept
            max_samples: Histogram samples kept per series
            max_entries: Raw metric entries kept; the oldest are dropped first
        """
        self._retention_hours = retention_hours
        self._max_samples = max_samples
        self._metrics: Deque[MetricEntry] = deque(maxlen=max_entries)
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._active_timers: Dict[str, TimerContext] = {}
        self._timer_seq = 0
        self._lock = threading.Lock()

    # =========================================================================
    # Counter Methods
    # =========================================================================

    def increment(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[Dict[str, str]] = None
    ) -> None:
        """Increment a counter"""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] += value
            self._metrics.append(MetricEntry(
                name=name,
                value=self._counters[key],
                timestamp=datetime.now(),
                labels=labels or {},
                metric_type=MetricType.COUNTER
            ))

    def get_counter(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None
    ) -> float:
        key = self._make_key(name, labels)
        return self._counters.get(key, 0.0)

    # =========================================================================
    # Gauge Methods
    # =========================================================================

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ) -> None:
        """Set a gauge"""
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value
            self._metrics.append(MetricEntry(
                name=name,
                value=value,
                timestamp=datetime.now(),
                labels=labels or {},
                metric_type=MetricType.GAUGE
            ))

    def get_gauge(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None
    ) -> Optional[float]:
        key = self._make_key(name, labels)
        return self._gauges.get(key)

    # =========================================================================
    # Histogram Methods
    # =========================================================================

    def observe(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None
    ) -> None:
        """Add a sample to a histogram"""
        key = self._make_key(name, labels)
        with self._lock:
            samples = self._histograms[key]
            samples.append(value)
            if len(samples) > self._max_samples:
                del samples[: len(samples) - self._max_samples]
            self._metrics.append(MetricEntry(
                name=name,
                value=value,
                timestamp=datetime.now(),
                labels=labels or {},
                metric_type=MetricType.HISTOGRAM
            ))

    def get_histogram_stats(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None
    ) -> Dict[str, float]:
        """Histogram statistics"""
        key = self._make_key(name, labels)
        with self._lock:
            values = list(self._histograms.get(key, []))

        if not values:
            return {
                "count": 0,
                "min": 0,
                "max": 0,
                "avg": 0,
                "p50": 0,
                "p90": 0,
                "p99": 0
            }

        sorted_values = sorted(values)
        count = len(values)

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(values) / count,
            "p50": self._percentile(sorted_values, 50),
            "p90": self._percentile(sorted_values, 90),
            "p99": self._percentile(sorted_values, 99)
        }

    # =========================================================================
    # Timer Methods
    # =========================================================================

    def start_timer(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None
    ) -> str:
        """Start a timer"""
        with self._lock:
            self._timer_seq += 1
            timer_id = f"{name}_{self._timer_seq}"
            self._active_timers[timer_id] = TimerContext(
                start_time=time.monotonic(),
                name=name,
                labels=labels or {}
            )
        return timer_id

    def stop_timer(self, timer_id: str) -> Optional[float]:
        """Stop a timer and record the elapsed milliseconds"""
        with self._lock:
            context = self._active_timers.pop(timer_id, None)
        if context is None:
            return None

        elapsed_ms = (time.monotonic() - context.start_time) * 1000
        self.observe(context.name, elapsed_ms, context.labels)
        return elapsed_ms

    def discard_timer(self, timer_id: str) -> None:
        """Drop a running timer without recording a sample"""
        with self._lock:
            self._active_timers.pop(timer_id, None)

    # =========================================================================
    # Dispatch-specific Methods
    # =========================================================================

    def record_dispatch_attempt(
        self,
        agent_id: Optional[str],
        outcome: str,
        latency_ms: float,
    ) -> None:
        """
        Record one dispatch attempt.

        The unlabeled `dispatch_latency_ms` series is fed by the attempt timer;
        this adds the per-agent series and outcome counters.
        """
        agent = agent_id or "none"

        self.increment("dispatch_attempts_total", 1, {"agent_id": agent, "outcome": outcome})
        self.increment("dispatch_attempts_total")

        if agent_id is not None:
            self.observe("dispatch_latency_ms", latency_ms, {"agent_id": agent_id})
            if outcome == "succeeded":
                self.increment("agent_success_total", 1, {"agent_id": agent_id})
            else:
                self.increment("agent_failure_total", 1, {"agent_id": agent_id})

    def record_execution(
        self,
        outcome: str,
        total_time_ms: float,
        task_count: int,
    ) -> None:
        """Record a finished graph execution"""
        labels = {"outcome": outcome}
        self.observe("execution_time_ms", total_time_ms, labels)
        self.observe("execution_task_count", task_count, labels)
        self.increment("executions_total", 1, labels)

    # =========================================================================
    # Query Methods
    # =========================================================================

    def get_agent_stats(self, agent_id: str) -> Dict[str, Any]:
        """Per-agent attempt statistics"""
        labels = {"agent_id": agent_id}
        success_count = self.get_counter("agent_success_total", labels)
        failure_count = self.get_counter("agent_failure_total", labels)
        total_count = success_count + failure_count

        success_rate = (
            success_count / total_count * 100
            if total_count > 0 else 0
        )

        return {
            "agent_id": agent_id,
            "total_attempts": int(total_count),
            "success_count": int(success_count),
            "failure_count": int(failure_count),
            "success_rate": round(success_rate, 2),
            "latency": self.get_histogram_stats("dispatch_latency_ms", labels)
        }

    def get_summary(self) -> Dict[str, Any]:
        """Overall metrics summary"""
        cutoff = datetime.now() - timedelta(hours=self._retention_hours)
        with self._lock:
            recent_count = sum(1 for m in self._metrics if m.timestamp > cutoff)
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            histogram_names = set(key.split("__")[0] for key in self._histograms)

        return {
            "total_metrics": recent_count,
            "counters": counters,
            "gauges": gauges,
            "histograms": {
                name: self.get_histogram_stats(name)
                for name in sorted(histogram_names)
            },
            "retention_hours": self._retention_hours
        }

    def cleanup_old_metrics(self) -> int:
        """Drop metric entries older than the retention window"""
        cutoff = datetime.now() - timedelta(hours=self._retention_hours)
        with self._lock:
            original_count = len(self._metrics)
            while self._metrics and self._metrics[0].timestamp <= cutoff:
                self._metrics.popleft()
            return original_count - len(self._metrics)

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._active_timers.clear()

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _make_key(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None
    ) -> str:
        if not labels:
            return name

        label_str = "__".join(
            f"{k}={v}" for k, v in sorted(labels.items())
        )
        return f"{name}__{label_str}"

    def _percentile(self, sorted_values: List[float], p: int) -> float:
        if not sorted_values:
            return 0

        index = int(len(sorted_values) * p / 100)
        index = min(index, len(sorted_values) - 1)
        return sorted_values[index]
