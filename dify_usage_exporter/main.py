"""
Dify Usage Exporter
===================
Daemon entry point: cron scheduled exports plus the health server.
"""

import asyncio
import sys

import structlog
from pydantic import ValidationError

from dify_usage_exporter.api.server import HealthServer
from dify_usage_exporter.bootstrap import build_components
from dify_usage_exporter.config import Settings, get_settings
from dify_usage_exporter.jobs.scheduler import JobScheduler
from dify_usage_exporter.logging_config import configure_logging
from dify_usage_exporter.shutdown import GracefulShutdown

logger = structlog.get_logger()


async def run_exporter(settings: Settings) -> int:
    """Run until SIGINT/SIGTERM; returns the process exit code."""
    logger.info("Starting Dify Usage Exporter", env=settings.app_env)
    components = build_components(settings)

    scheduler = JobScheduler(settings.cron_schedule, components.pipeline.run)
    try:
        scheduler.setup()
    except ValueError as e:
        logger.error("Invalid cron schedule", cron=settings.cron_schedule, error=str(e))
        await components.close()
        return 1

    health_server = HealthServer(settings) if settings.healthcheck_enabled else None
    shutdown = GracefulShutdown(
        scheduler,
        health_server=health_server,
        timeout=settings.graceful_shutdown_timeout,
    )
    shutdown.install()

    try:
        if health_server is not None:
            await health_server.start()
        if settings.scheduler_enabled:
            scheduler.start()
        else:
            logger.warning("Scheduler is disabled")
        return await shutdown.wait()
    finally:
        await components.close()
        logger.info("Dify Usage Exporter stopped")


def run() -> None:
    """Entry point for the exporter daemon."""
    try:
        settings = get_settings()
    except ValidationError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)

    configure_logging(settings)
    sys.exit(asyncio.run(run_exporter(settings)))


if __name__ == "__main__":
    run()
