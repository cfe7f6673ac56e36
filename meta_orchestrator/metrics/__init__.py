"""
Metrics - in-process counters, gauges and histograms
"""

from .collector import MetricsCollector, MetricEntry, MetricType

__all__ = [
    "MetricsCollector",
    "MetricEntry",
    "MetricType",
]
