"""
Graceful Shutdown
=================
SIGINT/SIGTERM handling for the long-running exporter.
"""

import asyncio
import signal
from typing import Optional

import structlog

from dify_usage_exporter.api.server import HealthServer
from dify_usage_exporter.jobs.scheduler import JobScheduler

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class GracefulShutdown:
    """
    Stops the exporter in order: health server, scheduler, in-flight run.

    The in-flight export run is never cancelled; it gets up to `timeout`
    seconds to finish. shutdown() returns the process exit code.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        health_server: Optional[HealthServer] = None,
        timeout: float = 30.0,
    ):
        self.scheduler = scheduler
        self.health_server = health_server
        self.timeout = timeout
        self._requested = asyncio.Event()

    def install(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self.request, sig.name)

    def request(self, reason: str = "manual") -> None:
        if not self._requested.is_set():
            logger.info("Shutdown requested", signal=reason)
            self._requested.set()

    async def wait(self) -> int:
        """Block until a shutdown is requested, then shut down."""
        await self._requested.wait()
        return await self.shutdown()

    async def shutdown(self) -> int:
        if self.health_server is not None:
            try:
                await self.health_server.stop()
            except Exception as e:
                logger.error("Failed to stop health server", error=str(e))

        self.scheduler.stop()

        if self.scheduler.is_running:
            logger.info("Waiting for running export to finish", timeout=self.timeout)
        try:
            await asyncio.wait_for(self.scheduler.wait_for_idle(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("Graceful shutdown timed out", timeout=self.timeout)
            return 1

        logger.info("Graceful shutdown completed")
        return 0
