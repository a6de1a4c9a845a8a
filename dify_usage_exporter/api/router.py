"""
API Router
==========
Combines all endpoint routers.
"""

from fastapi import APIRouter

from dify_usage_exporter.api.endpoints import health

api_router = APIRouter()

api_router.include_router(health.router, tags=["Health"])
