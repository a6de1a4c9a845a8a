"""
Metrics Tests
=============
Tests for per-run execution metrics.
"""

import re

from dify_usage_exporter.monitoring.metrics import MetricsCollector, generate_execution_id


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_execution_id_format(self):
        assert re.fullmatch(r"exec-\d+-[0-9a-f]{8}", generate_execution_id())

    def test_counters_reset_per_run(self):
        collector = MetricsCollector()
        collector.start_collection()
        collector.record_fetched(10)
        collector.record_send_success(8)
        collector.record_send_failed()
        collector.stop_collection()

        report = collector.report()
        assert report["fetched_records"] == 10
        assert report["send_success"] == 8
        assert report["send_failed"] == 1
        assert report["duration_seconds"] >= 0

        collector.start_collection()
        assert collector.report()["fetched_records"] == 0

    def test_zero_counts_ignored(self):
        collector = MetricsCollector()
        collector.record_fetched(0)
        assert collector.metrics.fetched_records == 0
