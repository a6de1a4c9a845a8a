"""
Error Notifier
==============
Operator notification when a batch is quarantined to the failed directory.
"""

from dataclasses import asdict, dataclass
from typing import Protocol

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ErrorNotification:
    title: str
    file_path: str
    last_error: str
    first_attempt: str
    retry_count: int


class Notifier(Protocol):
    async def send_error_notification(self, message: ErrorNotification) -> None:
        """Deliver the notification. May raise; callers treat it as best effort."""
        ...


class LogNotifier:
    """Writes notifications to the error log."""

    async def send_error_notification(self, message: ErrorNotification) -> None:
        logger.error("Error notification", **asdict(message))
