"""
Data Transformer
================
Converts normalized records into the partner billing API request.
"""

from collections.abc import Callable, Sequence
from datetime import date, datetime, time, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from dify_usage_exporter.core.idempotency import batch_key, record_key, source_event_id
from dify_usage_exporter.errors import TransformError
from dify_usage_exporter.schemas.usage import (
    ApiMeterRequest,
    NormalizedModelRecord,
    TransformResult,
    UsageWireRecord,
)

logger = structlog.get_logger()

EXPORTER_VERSION = "1.1.0"
AGGREGATION_METHOD = "daily_sum"
CURRENCY = "USD"


def to_iso_instant(value: datetime) -> str:
    """Format as UTC ISO-8601 with millisecond precision, e.g. 2025-12-01T00:00:00.000Z."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def date_to_instant(usage_date: str) -> str:
    """Midnight UTC of a YYYY-MM-DD date."""
    day = date.fromisoformat(usage_date)
    return to_iso_instant(datetime.combine(day, time.min, tzinfo=timezone.utc))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def wire_record_key(record: UsageWireRecord) -> str:
    return record_key(
        record.usage_date,
        record.metadata.source_app_id or "",
        record.provider,
        record.model,
    )


def compute_batch_key(records: Sequence[UsageWireRecord]) -> str:
    """Batch idempotency key of a list of wire records."""
    return batch_key(wire_record_key(r) for r in records)


class DataTransformer:
    """
    Builds a validated ApiMeterRequest from normalized records.

    A single invalid record fails the whole batch.
    """

    def __init__(
        self,
        tenant_id: str,
        exporter_version: str = EXPORTER_VERSION,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.tenant_id = tenant_id
        self.exporter_version = exporter_version
        self.clock = clock

    def transform(self, records: Sequence[NormalizedModelRecord]) -> TransformResult:
        """
        Transform normalized records into a request for the partner API.

        Raises:
            TransformError: empty input, token mismatch or schema violation
        """
        if not records:
            raise TransformError("No records to transform")

        wire_records = [self._to_wire_record(record) for record in records]
        request = self.build_request(wire_records)

        logger.info("Transformed records", record_count=len(wire_records))
        return TransformResult(request=request, record_count=len(wire_records))

    def build_request(self, records: Sequence[UsageWireRecord | dict[str, Any]]) -> ApiMeterRequest:
        """
        Wrap wire records in a request envelope and validate it.

        Also used when replaying spooled records, so the envelope (tenant,
        export timestamp, date range) always reflects the current attempt.
        """
        if not records:
            raise TransformError("No records to transform")

        payload_records = [
            r.model_dump(mode="json", exclude_none=True) if isinstance(r, UsageWireRecord) else r
            for r in records
        ]
        usage_dates = sorted(r["usage_date"] for r in payload_records)

        try:
            date_range = {
                "start": date_to_instant(usage_dates[0]),
                "end": date_to_instant(usage_dates[-1]),
            }
        except ValueError as e:
            raise TransformError(f"Invalid usage date: {e}") from e

        payload = {
            "tenant_id": self.tenant_id,
            "export_metadata": {
                "exporter_version": self.exporter_version,
                "export_timestamp": to_iso_instant(self.clock()),
                "aggregation_period": "daily",
                "source_system": "dify",
                "date_range": date_range,
            },
            "records": payload_records,
        }

        try:
            return ApiMeterRequest.model_validate(payload)
        except ValidationError as e:
            logger.error("Request failed schema validation", errors=e.errors(include_url=False))
            raise TransformError(f"Schema validation failed: {e}") from e

    def _to_wire_record(self, record: NormalizedModelRecord) -> dict[str, Any]:
        expected_total = record.input_tokens + record.output_tokens
        if record.total_tokens != expected_total:
            raise TransformError(
                f"Token mismatch: {record.total_tokens} != {expected_total} "
                f"({record.input_tokens} + {record.output_tokens})"
            )

        metadata: dict[str, Any] = {
            "source_system": "dify",
            "source_event_id": source_event_id(
                record.usage_date,
                record.provider,
                record.model,
                record.app_id,
                record.user_id,
            ),
            "aggregation_method": AGGREGATION_METHOD,
        }
        if record.app_id:
            metadata["source_app_id"] = record.app_id
        if record.app_name:
            metadata["source_app_name"] = record.app_name

        return {
            "usage_date": record.usage_date,
            "provider": record.provider,
            "model": record.model,
            "input_tokens": record.input_tokens,
            "output_tokens": record.output_tokens,
            "total_tokens": expected_total,
            "request_count": 1,
            "cost_actual": record.cost_actual,
            "currency": CURRENCY,
            "metadata": metadata,
        }
