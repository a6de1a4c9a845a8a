"""
Monitoring
==========
Run metrics and Prometheus instrumentation.
"""

from dify_usage_exporter.monitoring.metrics import ExecutionMetrics, MetricsCollector

__all__ = ["ExecutionMetrics", "MetricsCollector"]
