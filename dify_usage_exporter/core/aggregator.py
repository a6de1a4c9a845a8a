"""
Usage Aggregation
=================
Rolls per-execution model usage up into daily records.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

import structlog

from dify_usage_exporter.schemas.usage import (
    AggregatedModelRecord,
    NormalizedModelRecord,
    RawModelUsageRecord,
)

logger = structlog.get_logger()


@dataclass
class _Totals:
    user_type: str
    app_name: str
    currency: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    prompt_price: Decimal = Decimal("0")
    completion_price: Decimal = Decimal("0")
    total_price: Decimal = Decimal("0")
    execution_count: int = 0


def _format_price(value: Decimal) -> str:
    # fixed notation, trailing zeros dropped
    return format(value.normalize(), "f")


def aggregate_model_usage(records: Iterable[RawModelUsageRecord]) -> list[AggregatedModelRecord]:
    """
    Sum token counts and prices per (date, app, user, provider, model).

    Prices are accumulated as Decimal to avoid float drift and emitted as
    decimal strings. Output is sorted by the grouping key.
    """
    groups: dict[tuple[str, str, str, str, str], _Totals] = {}

    for record in records:
        key = (record.date, record.app_id, record.user_id, record.model_provider, record.model_name)
        totals = groups.get(key)
        if totals is None:
            totals = _Totals(
                user_type=record.user_type,
                app_name=record.app_name,
                currency=record.currency,
            )
            groups[key] = totals

        totals.prompt_tokens += record.prompt_tokens
        totals.completion_tokens += record.completion_tokens
        totals.total_tokens += record.total_tokens
        totals.prompt_price += Decimal(str(record.prompt_price))
        totals.completion_price += Decimal(str(record.completion_price))
        totals.total_price += Decimal(str(record.total_price))
        totals.execution_count += 1

    aggregated = [
        AggregatedModelRecord(
            period=usage_date,
            period_type="daily",
            user_id=user_id,
            user_type=totals.user_type,
            app_id=app_id,
            app_name=totals.app_name,
            model_provider=provider,
            model_name=model,
            prompt_tokens=totals.prompt_tokens,
            completion_tokens=totals.completion_tokens,
            total_tokens=totals.total_tokens,
            prompt_price=_format_price(totals.prompt_price),
            completion_price=_format_price(totals.completion_price),
            total_price=_format_price(totals.total_price),
            currency=totals.currency,
            execution_count=totals.execution_count,
        )
        for (usage_date, app_id, user_id, provider, model), totals in sorted(groups.items())
    ]

    logger.info("Aggregated model usage", groups=len(aggregated))
    return aggregated


def merge_normalized(records: Iterable[NormalizedModelRecord]) -> list[NormalizedModelRecord]:
    """
    Combine normalized records that collapsed onto the same
    (date, app, user, provider, model) key.

    Raw aliases of one provider or model ("bedrock", "aws-bedrock") are
    grouped separately by aggregate_model_usage but share a source_event_id
    once normalized, so they must be summed before transformation.
    """
    merged: dict[tuple, NormalizedModelRecord] = {}
    costs: dict[tuple, Decimal] = {}
    seen = 0

    for record in records:
        seen += 1
        key = (record.usage_date, record.app_id, record.user_id, record.provider, record.model)
        existing = merged.get(key)
        if existing is None:
            merged[key] = record
            costs[key] = Decimal(str(record.cost_actual))
            continue

        costs[key] += Decimal(str(record.cost_actual))
        merged[key] = existing.model_copy(
            update={
                "input_tokens": existing.input_tokens + record.input_tokens,
                "output_tokens": existing.output_tokens + record.output_tokens,
                "total_tokens": existing.total_tokens + record.total_tokens,
                "cost_actual": float(costs[key]),
            }
        )

    if len(merged) < seen:
        logger.info("Merged normalized aliases", before=seen, after=len(merged))
    return list(merged.values())
