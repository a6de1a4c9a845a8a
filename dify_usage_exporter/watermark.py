"""
Watermark
=========
Last successfully exported usage date, so runs only fetch new data.
"""

import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, ValidationError

from dify_usage_exporter.fileutils import write_file_atomic

logger = structlog.get_logger()


class Watermark(BaseModel):
    last_fetched_date: date
    last_updated_at: datetime


class WatermarkStore:
    """JSON file holding the watermark."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Optional[Watermark]:
        if not self.path.exists():
            return None
        try:
            return Watermark.model_validate(json.loads(self.path.read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("Ignoring unreadable watermark", path=str(self.path), error=str(e))
            return None

    def save(self, last_fetched_date: date) -> Watermark:
        watermark = Watermark(
            last_fetched_date=last_fetched_date,
            last_updated_at=datetime.now(timezone.utc),
        )
        write_file_atomic(self.path, watermark.model_dump_json(indent=2))
        logger.info("Watermark updated", last_fetched_date=last_fetched_date.isoformat())
        return watermark


def fetch_window(
    today: date,
    fetch_days: int,
    watermark: Optional[Watermark] = None,
) -> tuple[date, date]:
    """
    Inclusive [start, end] date range to fetch.

    Without a watermark the last fetch_days days are fetched. With one, the
    window starts the day after it, but never earlier than fetch_days ago.
    """
    end = today
    start = today - timedelta(days=fetch_days - 1)
    if watermark is not None:
        start = max(start, watermark.last_fetched_date + timedelta(days=1))
    return start, end
