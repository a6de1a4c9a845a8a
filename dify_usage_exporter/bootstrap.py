"""
Component Wiring
================
Builds the exporter's collaborators from Settings.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from dify_usage_exporter.config import Settings
from dify_usage_exporter.core.normalizer import Normalizer
from dify_usage_exporter.core.transformer import DataTransformer
from dify_usage_exporter.fetcher.dify_client import DifyConsoleClient
from dify_usage_exporter.jobs.pipeline import ExportPipeline
from dify_usage_exporter.monitoring.metrics import MetricsCollector
from dify_usage_exporter.notifier import LogNotifier
from dify_usage_exporter.sender.external_api import ExternalApiSender
from dify_usage_exporter.sender.http_client import PartnerApiClient
from dify_usage_exporter.sender.spool import SpoolManager
from dify_usage_exporter.watermark import WatermarkStore


@dataclass
class Components:
    settings: Settings
    spool_manager: SpoolManager
    sender: ExternalApiSender
    pipeline: ExportPipeline
    fetcher: DifyConsoleClient
    client: PartnerApiClient

    async def close(self) -> None:
        await self.fetcher.close()
        await self.client.close()


def build_components(
    settings: Settings,
    partner_transport: Optional[httpx.AsyncBaseTransport] = None,
    dify_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Components:
    metrics = MetricsCollector()
    spool_manager = SpoolManager(
        spool_dir=settings.spool_dir,
        failed_dir=settings.failed_dir,
        notifier=LogNotifier(),
    )
    transformer = DataTransformer(tenant_id=settings.api_meter_tenant_id)
    client = PartnerApiClient(
        url=settings.external_api_url,
        token=settings.external_api_token,
        timeout=settings.external_api_timeout_seconds,
        transport=partner_transport,
    )
    sender = ExternalApiSender(
        client=client,
        spool_manager=spool_manager,
        transformer=transformer,
        max_retries=settings.max_retries,
        backoff_seconds=settings.retry_backoff_seconds,
        max_spool_retries=settings.max_spool_retries,
        metrics=metrics,
    )
    fetcher = DifyConsoleClient(
        base_url=settings.dify_api_base_url,
        email=settings.dify_email,
        password=settings.dify_password,
        timeout=settings.dify_fetch_timeout_seconds,
        retry_count=settings.dify_fetch_retry_count,
        transport=dify_transport,
    )
    pipeline = ExportPipeline(
        fetcher=fetcher,
        normalizer=Normalizer.from_config(settings.normalization_config_path),
        transformer=transformer,
        sender=sender,
        metrics=metrics,
        batch_size=settings.batch_size,
        fetch_days=settings.dify_fetch_days,
        watermark_store=(
            WatermarkStore(settings.watermark_file_path) if settings.watermark_enabled else None
        ),
    )
    return Components(
        settings=settings,
        spool_manager=spool_manager,
        sender=sender,
        pipeline=pipeline,
        fetcher=fetcher,
        client=client,
    )
