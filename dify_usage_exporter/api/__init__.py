"""Health check API."""

from dify_usage_exporter.api.router import api_router
from dify_usage_exporter.api.server import HealthServer, create_app

__all__ = ["HealthServer", "api_router", "create_app"]
