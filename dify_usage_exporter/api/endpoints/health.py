"""
Health Check Endpoints
======================
Liveness probe for container orchestration.
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

router = APIRouter()

_STARTED = time.monotonic()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    uptime: float
    timestamp: str


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Liveness probe endpoint.
    Returns OK with process uptime in seconds.
    """
    return HealthResponse(
        status="ok",
        uptime=round(time.monotonic() - _STARTED, 3),
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
