"""
Core Business Logic
====================
Aggregation, normalization, idempotency keys and wire transformation.
"""

from dify_usage_exporter.core.aggregator import aggregate_model_usage, merge_normalized
from dify_usage_exporter.core.idempotency import batch_key, record_key, source_event_id
from dify_usage_exporter.core.normalizer import (
    ModelNormalizer,
    Normalizer,
    ProviderNormalizer,
)
from dify_usage_exporter.core.transformer import DataTransformer, compute_batch_key

__all__ = [
    "DataTransformer",
    "ModelNormalizer",
    "Normalizer",
    "ProviderNormalizer",
    "aggregate_model_usage",
    "batch_key",
    "compute_batch_key",
    "merge_normalized",
    "record_key",
    "source_event_id",
]
