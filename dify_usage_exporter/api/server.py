"""
Health Server
=============
FastAPI app for /health and /metrics, served by uvicorn in the exporter's
event loop.
"""

import asyncio
import contextlib
from collections.abc import Iterator
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from dify_usage_exporter import __version__
from dify_usage_exporter.api.router import api_router
from dify_usage_exporter.config import Settings

logger = structlog.get_logger()


def create_app(metrics_enabled: bool = True) -> FastAPI:
    app = FastAPI(
        title="Dify Usage Exporter",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    if metrics_enabled:
        app.mount("/metrics", make_asgi_app())
    app.include_router(api_router)
    return app


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to GracefulShutdown."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class HealthServer:
    """Runs uvicorn as a task so the scheduler shares its loop."""

    def __init__(self, settings: Settings):
        config = uvicorn.Config(
            create_app(settings.metrics_enabled),
            host=settings.healthcheck_host,
            port=settings.healthcheck_port,
            log_level=settings.log_level.lower(),
            access_log=False,
        )
        self.server = _Server(config)
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self.server.serve())
        logger.info(
            "Health server started",
            host=self.server.config.host,
            port=self.server.config.port,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self.server.should_exit = True
        await self._task
        self._task = None
        logger.info("Health server stopped")
