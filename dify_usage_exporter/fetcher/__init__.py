"""
Upstream Fetching
=================
Dify console API access.
"""

from dify_usage_exporter.fetcher.base import UsageFetcher
from dify_usage_exporter.fetcher.dify_client import DifyApp, DifyConsoleClient, TokenCostRow

__all__ = ["DifyApp", "DifyConsoleClient", "TokenCostRow", "UsageFetcher"]
