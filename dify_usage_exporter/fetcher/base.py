"""
Fetcher Interface
=================
What the export pipeline needs from an upstream usage source.
"""

from datetime import date
from typing import Protocol

from dify_usage_exporter.fetcher.dify_client import DifyApp, TokenCostRow
from dify_usage_exporter.schemas.usage import RawModelUsageRecord


class UsageFetcher(Protocol):
    async def fetch_apps(self) -> list[DifyApp]: ...

    async def fetch_app_token_costs(self, app_id: str, start: date, end: date) -> list[TokenCostRow]: ...

    async def fetch_model_usage(self, start: date, end: date) -> list[RawModelUsageRecord]: ...

    async def close(self) -> None: ...
