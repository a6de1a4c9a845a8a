"""
Usage Schemas
=============
Pydantic models for usage records on their way to the partner billing API.
"""

from datetime import datetime, timedelta
from typing import Annotated, Literal, Optional
from uuid import UUID

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"

UserType = Literal["end_user", "account"]
AggregationPeriod = Literal["daily", "weekly", "monthly"]


def _parse_instant(v: str) -> str:
    """Validate a full ISO-8601 UTC instant, keeping the original text."""
    if "T" not in v:
        raise ValueError(f"timestamp has no time component: {v!r}")
    parsed = datetime.fromisoformat(v.replace("Z", "+00:00"))
    if parsed.utcoffset() != timedelta(0):
        raise ValueError(f"timestamp is not UTC: {v!r}")
    return v


IsoInstant = Annotated[str, AfterValidator(_parse_instant)]


class RawModelUsageRecord(BaseModel):
    """
    One LLM node execution as reported by the Dify console.
    Produced by the fetcher, consumed by the aggregator.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    date: str = Field(..., pattern=DATE_PATTERN)
    app_id: str
    app_name: str = ""
    user_id: str = ""
    user_type: UserType = "account"
    model_provider: str = ""
    model_name: str = ""
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    prompt_price: float = 0.0
    completion_price: float = 0.0
    total_price: float = 0.0
    currency: str = "USD"


class AggregatedModelRecord(BaseModel):
    """Daily usage of one model by one user of one app."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    period: str
    period_type: AggregationPeriod = "daily"
    user_id: str = ""
    user_type: UserType = "account"
    app_id: str = ""
    app_name: str = ""
    model_provider: str = ""
    model_name: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    prompt_price: str = "0"
    completion_price: str = "0"
    total_price: str = "0"
    currency: str = "USD"
    execution_count: int = 0


class NormalizedModelRecord(BaseModel):
    """Aggregated record with canonical provider/model names and numeric cost."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost_actual: float
    usage_date: str
    app_id: Optional[str] = None
    app_name: Optional[str] = None
    user_id: Optional[str] = None


class TimeRange(BaseModel):
    start: IsoInstant
    end: IsoInstant


class UsageRecordMetadata(BaseModel):
    source_system: Literal["dify"] = "dify"
    source_event_id: str = Field(..., min_length=1)
    source_app_id: Optional[str] = None
    source_app_name: Optional[str] = None
    aggregation_method: str = "daily_sum"
    time_range: Optional[TimeRange] = None


class UsageWireRecord(BaseModel):
    """
    A single usage record in the partner API's schema.
    total_tokens must equal input_tokens + output_tokens.
    """

    usage_date: str = Field(..., pattern=DATE_PATTERN)
    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)
    total_tokens: int = Field(..., ge=0)
    request_count: int = Field(..., ge=0)
    cost_actual: float = Field(..., ge=0)
    currency: str = "USD"
    metadata: UsageRecordMetadata

    @model_validator(mode="after")
    def check_token_sum(self) -> "UsageWireRecord":
        if self.total_tokens != self.input_tokens + self.output_tokens:
            raise ValueError("total_tokens must equal input_tokens + output_tokens")
        return self


class DateRange(BaseModel):
    start: IsoInstant
    end: IsoInstant


class ExportMetadata(BaseModel):
    exporter_version: str = "1.1.0"
    export_timestamp: IsoInstant
    aggregation_period: AggregationPeriod
    source_system: Literal["dify"] = "dify"
    date_range: DateRange


class ApiMeterRequest(BaseModel):
    """Request body for POST <EXTERNAL_API_URL>."""

    tenant_id: str
    export_metadata: ExportMetadata
    records: list[UsageWireRecord] = Field(..., min_length=1)

    @field_validator("tenant_id")
    @classmethod
    def check_tenant_id(cls, v: str) -> str:
        UUID(v)
        return v


class TransformResult(BaseModel):
    """Validated request plus bookkeeping returned by the transformer."""

    request: ApiMeterRequest
    record_count: int
