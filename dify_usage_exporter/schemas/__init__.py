"""
Pydantic Schemas
================
Usage records, partner API request body and spool file formats.
"""

from dify_usage_exporter.schemas.spool import LegacySpoolFile, SpoolFile
from dify_usage_exporter.schemas.usage import (
    AggregatedModelRecord,
    ApiMeterRequest,
    ExportMetadata,
    NormalizedModelRecord,
    RawModelUsageRecord,
    TransformResult,
    UsageWireRecord,
)

__all__ = [
    "AggregatedModelRecord",
    "ApiMeterRequest",
    "ExportMetadata",
    "LegacySpoolFile",
    "NormalizedModelRecord",
    "RawModelUsageRecord",
    "SpoolFile",
    "TransformResult",
    "UsageWireRecord",
]
