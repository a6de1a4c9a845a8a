"""
External API Sender
===================
Delivers usage batches to the partner billing API.

Features:
- Retry with exponential backoff (Retry-After honored)
- 409 Conflict treated as already delivered
- Durable spooling once in-process retries are exhausted
- Resend of spooled batches, quarantine after too many failures
"""

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from dify_usage_exporter.core.transformer import DataTransformer, compute_batch_key
from dify_usage_exporter.errors import DeliveryError, ExporterError
from dify_usage_exporter.monitoring.metrics import MetricsCollector
from dify_usage_exporter.schemas.spool import SpoolFile
from dify_usage_exporter.schemas.usage import ApiMeterRequest, UsageWireRecord
from dify_usage_exporter.sender.http_client import PartnerApiClient
from dify_usage_exporter.sender.retry_policy import (
    is_conflict,
    is_non_retryable,
    is_retryable,
    wait_retry_after,
)
from dify_usage_exporter.sender.spool import SpoolManager

logger = structlog.get_logger()


class SendOutcome(str, Enum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    SPOOLED = "spooled"


@dataclass
class ResendSummary:
    attempted: int = 0
    succeeded: int = 0
    retried: int = 0
    moved_to_failed: int = 0


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying request",
        retry_count=retry_state.attempt_number,
        status=getattr(error, "status", None),
        message=str(error),
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
    )


class ExternalApiSender:
    """
    Sends ApiMeterRequests and owns the spool lifecycle around them.

    Outcomes of send():
        2xx                      -> DELIVERED
        409                      -> DUPLICATE (success, nothing spooled)
        400/401/403/404          -> DeliveryError raised, nothing spooled
        anything else after
        max_retries retries      -> SPOOLED
    """

    def __init__(
        self,
        client: PartnerApiClient,
        spool_manager: SpoolManager,
        transformer: DataTransformer,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        max_spool_retries: int = 10,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.client = client
        self.spool_manager = spool_manager
        self.transformer = transformer
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_spool_retries = max_spool_retries
        self.metrics = metrics or MetricsCollector()

    async def send(self, request: ApiMeterRequest) -> SendOutcome:
        """
        Deliver a request, spooling it if retryable failures persist.

        Raises:
            DeliveryError: the partner API rejected the request (400/401/403/404)
            SpoolError: delivery failed and the batch could not be spooled
        """
        record_count = len(request.records)
        try:
            outcome = await self.deliver(request)
        except DeliveryError as e:
            self.metrics.record_send_failed()
            logger.error(
                "Failed to send records",
                record_count=record_count,
                status=e.status,
                message=e.message,
            )
            if is_non_retryable(e):
                raise
            await self.spool_manager.save_to_spool(request.records, last_error=str(e))
            self.metrics.record_spool_saved()
            logger.info("Saved to spool file for retry", record_count=record_count)
            return SendOutcome.SPOOLED

        self.metrics.record_send_success(record_count)
        return outcome

    async def deliver(self, request: ApiMeterRequest) -> SendOutcome:
        """
        POST with retries; no spooling.

        Raises:
            DeliveryError: the last failure once retrying stops
        """
        payload = request.model_dump(mode="json", exclude_none=True)
        record_count = len(request.records)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_retry_after(self.backoff_seconds),
            retry=retry_if_exception(is_retryable),
            before_sleep=_log_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self.client.post_usage(payload)
        except DeliveryError as e:
            if is_conflict(e):
                logger.info("Batch already recorded (409 Conflict)", record_count=record_count)
                return SendOutcome.DUPLICATE
            raise

        self._log_success(response, record_count)
        return SendOutcome.DELIVERED

    async def resend_spooled(self) -> ResendSummary:
        """
        Replay every spooled batch, oldest first.

        Delivered batches are deleted. Failures bump retry_count; a batch
        reaching max_spool_retries is moved to the failed directory.
        """
        summary = ResendSummary()
        spool_files = await self.spool_manager.list_spool_files()
        if not spool_files:
            return summary

        logger.info("Resending spooled batches", count=len(spool_files))

        for spool_file in spool_files:
            summary.attempted += 1
            try:
                await self.deliver(self.transformer.build_request(spool_file.records))
            except ExporterError as e:
                await self._record_resend_failure(spool_file, str(e), summary)
                continue

            await self.spool_manager.delete_spool_file(spool_file.filename or "")
            summary.succeeded += 1
            self.metrics.record_spool_resend_success()
            self.metrics.record_send_success(len(spool_file.records))
            logger.info(
                "Spooled batch resent",
                filename=spool_file.filename,
                record_count=len(spool_file.records),
            )

        logger.info(
            "Spool resend completed",
            attempted=summary.attempted,
            succeeded=summary.succeeded,
            retried=summary.retried,
            moved_to_failed=summary.moved_to_failed,
        )
        return summary

    async def resend_failed_file(self, records: Sequence[UsageWireRecord]) -> SendOutcome:
        """
        Manually replay a quarantined batch. Failures are raised to the caller
        and the failed file is left untouched.
        """
        request = self.transformer.build_request(list(records))
        outcome = await self.deliver(request)
        self.metrics.record_send_success(len(records))
        logger.info(
            "Failed batch resent",
            batch_idempotency_key=compute_batch_key(request.records),
            record_count=len(records),
        )
        return outcome

    async def _record_resend_failure(
        self, spool_file: SpoolFile, error: str, summary: ResendSummary
    ) -> None:
        retry_count = spool_file.retry_count + 1
        updated = spool_file.model_copy(update={"retry_count": retry_count, "last_error": error})
        self.metrics.record_send_failed()

        if retry_count >= self.max_spool_retries:
            await self.spool_manager.move_to_failed(updated)
            summary.moved_to_failed += 1
            self.metrics.record_failed_moved()
            logger.error(
                "Spooled batch exceeded retry limit",
                filename=spool_file.filename,
                retry_count=retry_count,
                last_error=error,
            )
            return

        await self.spool_manager.update_spool_file(updated)
        summary.retried += 1
        logger.warning(
            "Spooled batch resend failed",
            filename=spool_file.filename,
            retry_count=retry_count,
            last_error=error,
        )

    @staticmethod
    def _log_success(response, record_count: int) -> None:
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and {"inserted", "updated", "total"} <= data.keys():
            logger.info(
                "Successfully sent records",
                record_count=record_count,
                inserted=data["inserted"],
                updated=data["updated"],
                total=data["total"],
            )
        else:
            logger.info("Successfully sent records", record_count=record_count)
