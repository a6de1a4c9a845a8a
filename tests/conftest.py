"""
Test Configuration
==================
Pytest fixtures for Dify Usage Exporter tests.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest
import structlog

from dify_usage_exporter.config import Settings, get_settings
from dify_usage_exporter.core.transformer import DataTransformer
from dify_usage_exporter.schemas.usage import NormalizedModelRecord, UsageWireRecord
from dify_usage_exporter.sender.external_api import ExternalApiSender
from dify_usage_exporter.sender.http_client import PartnerApiClient
from dify_usage_exporter.sender.spool import SpoolManager

TENANT_ID = "550e8400-e29b-41d4-a716-446655440000"
PARTNER_URL = "https://partner.example.com/v1/usage"
FIXED_NOW = datetime(2025, 12, 6, 9, 30, 0, 123000, tzinfo=timezone.utc)

Handler = Callable[[httpx.Request], httpx.Response]


structlog.configure(
    wrapper_class=structlog.make_filtering_bound_logger(logging.WARNING),
    cache_logger_on_first_use=False,
)


def fixed_clock() -> datetime:
    return FIXED_NOW


def make_normalized(
    usage_date: str = "2025-12-01",
    provider: str = "anthropic",
    model: str = "claude-3-5-sonnet-20241022",
    input_tokens: int = 1000,
    output_tokens: int = 500,
    total_tokens: int | None = None,
    cost_actual: float = 0.0105,
    app_id: str | None = "app-1",
    app_name: str | None = "Support Bot",
    user_id: str | None = "user-1",
) -> NormalizedModelRecord:
    return NormalizedModelRecord(
        provider=provider,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens if total_tokens is None else total_tokens,
        cost_actual=cost_actual,
        usage_date=usage_date,
        app_id=app_id,
        app_name=app_name,
        user_id=user_id,
    )


def make_wire_record(
    usage_date: str = "2025-12-01",
    provider: str = "openai",
    model: str = "gpt-4o-2024-08-06",
    app_id: str = "app-1",
    input_tokens: int = 100,
    output_tokens: int = 50,
) -> UsageWireRecord:
    return UsageWireRecord.model_validate(
        {
            "usage_date": usage_date,
            "provider": provider,
            "model": model,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
            "request_count": 1,
            "cost_actual": 0.01,
            "currency": "USD",
            "metadata": {
                "source_system": "dify",
                "source_event_id": f"dify-{usage_date}-{provider}-{model}-abcdef123456",
                "source_app_id": app_id,
                "aggregation_method": "daily_sum",
            },
        }
    )


class RecordingHandler:
    """MockTransport handler replaying canned responses and recording requests."""

    def __init__(self, *responses: httpx.Response | Exception):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached per process; reset around every test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing all storage at a temporary directory."""
    return Settings(
        _env_file=None,
        app_env="test",
        external_api_url=PARTNER_URL,
        external_api_token="secret-token",
        api_meter_tenant_id=TENANT_ID,
        retry_backoff_seconds=0,
        spool_dir=str(tmp_path / "spool"),
        failed_dir=str(tmp_path / "failed"),
        watermark_file_path=str(tmp_path / "watermark.json"),
        normalization_config_path=str(tmp_path / "normalization.yaml"),
    )


@pytest.fixture
def transformer() -> DataTransformer:
    """Transformer with a fixed clock."""
    return DataTransformer(tenant_id=TENANT_ID, clock=fixed_clock)


@pytest.fixture
def spool_manager(tmp_path: Path) -> SpoolManager:
    """Spool manager on temporary directories."""
    return SpoolManager(
        spool_dir=tmp_path / "spool",
        failed_dir=tmp_path / "failed",
        clock=fixed_clock,
    )


@pytest.fixture
def make_sender(spool_manager: SpoolManager, transformer: DataTransformer):
    """Factory for a sender whose HTTP calls go to a MockTransport handler."""

    def _make(handler: Handler, **kwargs: Any) -> ExternalApiSender:
        client = PartnerApiClient(
            url=PARTNER_URL,
            token="secret-token",
            transport=httpx.MockTransport(handler),
        )
        kwargs.setdefault("backoff_seconds", 0)
        return ExternalApiSender(
            client=client,
            spool_manager=spool_manager,
            transformer=transformer,
            **kwargs,
        )

    return _make
