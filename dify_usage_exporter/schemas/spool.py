"""
Spool Schemas
=============
On-disk format of batches waiting for (re)delivery.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field

from dify_usage_exporter.schemas.usage import DATE_PATTERN, IsoInstant, UsageWireRecord

SPOOL_FILE_VERSION = "2.0.0"


class SpoolFile(BaseModel):
    """
    A batch that could not be delivered.

    first_attempt is set once when the batch is first spooled and never
    changes; retry_count and last_error change on every failed resend.
    """

    version: Literal["2.0.0"] = SPOOL_FILE_VERSION
    batch_idempotency_key: str = Field(..., alias="batchIdempotencyKey")
    records: list[UsageWireRecord] = Field(..., min_length=1)
    first_attempt: IsoInstant = Field(..., alias="firstAttempt")
    retry_count: int = Field(default=0, ge=0, alias="retryCount")
    last_error: str = Field(default="", alias="lastError")

    # Name of the file this batch was read from; never serialized.
    filename: Optional[str] = Field(default=None, exclude=True)

    model_config = {"populate_by_name": True}

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class LegacyExternalApiRecord(BaseModel):
    """Record shape written by exporter versions before 2.0.0."""

    date: str = Field(..., pattern=DATE_PATTERN)
    app_id: str = Field(..., min_length=1)
    app_name: str = Field(..., min_length=1)
    token_count: int = Field(..., ge=0)
    total_price: str
    currency: str = "USD"
    idempotency_key: str = Field(..., min_length=1)
    transformed_at: IsoInstant


class LegacySpoolFile(BaseModel):
    """Version 1 spool file; records may live under `records` or `data`."""

    version: Optional[Literal["1.0.0"]] = None
    batch_idempotency_key: Optional[str] = Field(default=None, alias="batchIdempotencyKey")
    records: Optional[list[LegacyExternalApiRecord]] = None
    data: Optional[list[LegacyExternalApiRecord]] = None
    first_attempt: Optional[IsoInstant] = Field(default=None, alias="firstAttempt")
    created_at: IsoInstant = Field(..., alias="createdAt")
    retry_count: int = Field(default=0, ge=0, alias="retryCount")
    last_error: Optional[str] = Field(default=None, alias="lastError")

    model_config = {"populate_by_name": True}

    @property
    def legacy_records(self) -> list[LegacyExternalApiRecord]:
        return self.records or self.data or []
