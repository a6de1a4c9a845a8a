"""
Execution Metrics
=================
Per-run counters plus process wide Prometheus counters.
"""

import secrets
import time
from dataclasses import asdict, dataclass
from typing import Optional

import structlog
from prometheus_client import Counter, Histogram

logger = structlog.get_logger()

RECORDS_FETCHED = Counter(
    "dify_exporter_records_fetched_total", "Usage records fetched from Dify"
)
RECORDS_TRANSFORMED = Counter(
    "dify_exporter_records_transformed_total", "Records transformed into the wire schema"
)
RECORDS_SENT = Counter(
    "dify_exporter_records_sent_total", "Records accepted by the partner API"
)
SEND_FAILURES = Counter(
    "dify_exporter_send_failures_total", "Batches the partner API did not accept"
)
BATCHES_SPOOLED = Counter(
    "dify_exporter_batches_spooled_total", "Batches written to the spool"
)
SPOOL_RESENT = Counter(
    "dify_exporter_spool_resent_total", "Spooled batches delivered on resend"
)
BATCHES_FAILED = Counter(
    "dify_exporter_batches_failed_total", "Batches moved to the failed directory"
)
RUN_DURATION = Histogram(
    "dify_exporter_run_duration_seconds", "Duration of a pipeline run"
)


@dataclass
class ExecutionMetrics:
    fetched_records: int = 0
    transformed_records: int = 0
    send_success: int = 0
    send_failed: int = 0
    spool_saved: int = 0
    spool_resend_success: int = 0
    failed_moved: int = 0


def generate_execution_id() -> str:
    """exec-{epoch millis}-{8 hex chars}"""
    return f"exec-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class MetricsCollector:
    """Collects counters for a single pipeline run."""

    def __init__(self) -> None:
        self.execution_id = ""
        self.metrics = ExecutionMetrics()
        self._started: Optional[float] = None
        self._stopped: Optional[float] = None

    def start_collection(self) -> str:
        self.execution_id = generate_execution_id()
        self.metrics = ExecutionMetrics()
        self._started = time.monotonic()
        self._stopped = None
        return self.execution_id

    def stop_collection(self) -> None:
        self._stopped = time.monotonic()
        RUN_DURATION.observe(self.duration_seconds)

    @property
    def duration_seconds(self) -> float:
        if self._started is None:
            return 0.0
        end = self._stopped if self._stopped is not None else time.monotonic()
        return end - self._started

    def record_fetched(self, count: int) -> None:
        if count > 0:
            self.metrics.fetched_records += count
            RECORDS_FETCHED.inc(count)

    def record_transformed(self, count: int) -> None:
        if count > 0:
            self.metrics.transformed_records += count
            RECORDS_TRANSFORMED.inc(count)

    def record_send_success(self, count: int) -> None:
        if count > 0:
            self.metrics.send_success += count
            RECORDS_SENT.inc(count)

    def record_send_failed(self, count: int = 1) -> None:
        if count > 0:
            self.metrics.send_failed += count
            SEND_FAILURES.inc(count)

    def record_spool_saved(self, count: int = 1) -> None:
        if count > 0:
            self.metrics.spool_saved += count
            BATCHES_SPOOLED.inc(count)

    def record_spool_resend_success(self, count: int = 1) -> None:
        if count > 0:
            self.metrics.spool_resend_success += count
            SPOOL_RESENT.inc(count)

    def record_failed_moved(self, count: int = 1) -> None:
        if count > 0:
            self.metrics.failed_moved += count
            BATCHES_FAILED.inc(count)

    def report(self) -> dict[str, object]:
        """Log and return the run summary."""
        summary: dict[str, object] = {
            "execution_id": self.execution_id,
            "duration_seconds": round(self.duration_seconds, 3),
            **asdict(self.metrics),
        }
        logger.info("Execution metrics", **summary)
        return summary
