"""
Export Pipeline
===============
One export run: resend spool, fetch, aggregate, normalize, transform, send.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

import structlog

from dify_usage_exporter.core.aggregator import aggregate_model_usage, merge_normalized
from dify_usage_exporter.core.normalizer import Normalizer
from dify_usage_exporter.core.transformer import DataTransformer
from dify_usage_exporter.fetcher.base import UsageFetcher
from dify_usage_exporter.monitoring.metrics import MetricsCollector
from dify_usage_exporter.schemas.usage import UsageWireRecord
from dify_usage_exporter.sender.external_api import ExternalApiSender
from dify_usage_exporter.watermark import WatermarkStore, fetch_window

logger = structlog.get_logger()


def _today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class RunResult:
    execution_id: str
    start: Optional[date] = None
    end: Optional[date] = None
    batches: dict[str, int] = field(default_factory=dict)
    metrics: dict[str, object] = field(default_factory=dict)


def chunk(records: list[UsageWireRecord], size: int) -> list[list[UsageWireRecord]]:
    return [records[i:i + size] for i in range(0, len(records), size)]


class ExportPipeline:
    """
    Runs one export.

    Spooled batches are retried before new data is fetched so the oldest
    failures go first. Transform errors abort the run; the next scheduled
    run starts fresh.
    """

    def __init__(
        self,
        fetcher: UsageFetcher,
        normalizer: Normalizer,
        transformer: DataTransformer,
        sender: ExternalApiSender,
        metrics: MetricsCollector,
        batch_size: int = 100,
        fetch_days: int = 30,
        watermark_store: Optional[WatermarkStore] = None,
        today: Callable[[], date] = _today,
    ):
        self.fetcher = fetcher
        self.normalizer = normalizer
        self.transformer = transformer
        self.sender = sender
        self.metrics = metrics
        self.batch_size = batch_size
        self.fetch_days = fetch_days
        self.watermark_store = watermark_store
        self.today = today

    async def run(self) -> RunResult:
        execution_id = self.metrics.start_collection()
        result = RunResult(execution_id=execution_id)

        with structlog.contextvars.bound_contextvars(execution_id=execution_id):
            try:
                await self._export(result)
            finally:
                self.metrics.stop_collection()
                result.metrics = self.metrics.report()
        return result

    async def _export(self, result: RunResult) -> None:
        await self.sender.resend_spooled()

        watermark = self.watermark_store.load() if self.watermark_store else None
        start, end = fetch_window(self.today(), self.fetch_days, watermark)
        result.start, result.end = start, end
        if start > end:
            logger.info("Nothing new to fetch", start=start.isoformat(), end=end.isoformat())
            return

        raw_records = await self.fetcher.fetch_model_usage(start, end)
        self.metrics.record_fetched(len(raw_records))
        if not raw_records:
            logger.info("No usage data to send", start=start.isoformat(), end=end.isoformat())
            self._advance_watermark(end)
            return

        aggregated = aggregate_model_usage(raw_records)
        normalized = merge_normalized(self.normalizer.normalize(aggregated))
        transformed = self.transformer.transform(normalized)
        self.metrics.record_transformed(transformed.record_count)

        for batch in chunk(transformed.request.records, self.batch_size):
            request = self.transformer.build_request(batch)
            outcome = await self.sender.send(request)
            result.batches[outcome.value] = result.batches.get(outcome.value, 0) + 1
            logger.info("Batch processed", outcome=outcome.value, record_count=len(batch))

        # spooled batches are durable, so the window counts as exported
        self._advance_watermark(end)

    def _advance_watermark(self, end: date) -> None:
        if self.watermark_store is not None:
            self.watermark_store.save(end)

