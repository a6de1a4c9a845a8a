"""
Spool Manager
=============
Durable file storage for batches that could not be delivered.

Layout:
    <spool_dir>/spool_<timestamp>_<batch key>.json    retryable
    <failed_dir>/failed_<timestamp>_<batch key>.json  quarantined

A single process owns both directories; there is no file locking.
"""

import asyncio
import json
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import structlog
from pydantic import ValidationError

from dify_usage_exporter.core.transformer import compute_batch_key, to_iso_instant, utc_now
from dify_usage_exporter.errors import SpoolError
from dify_usage_exporter.fileutils import write_file_atomic
from dify_usage_exporter.notifier import ErrorNotification, Notifier
from dify_usage_exporter.schemas.spool import LegacySpoolFile, SpoolFile
from dify_usage_exporter.schemas.usage import UsageWireRecord

logger = structlog.get_logger()

SPOOL_PREFIX = "spool"
FAILED_PREFIX = "failed"


def _sort_key(spool_file: SpoolFile) -> datetime:
    parsed = datetime.fromisoformat(spool_file.first_attempt.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _safe_name(filename: str) -> str:
    """Reject anything that is not a bare file name."""
    name = Path(filename).name
    if name != filename or name in ("", ".", ".."):
        raise ValueError(f"Invalid file name: {filename!r}")
    return name


def convert_legacy_spool_file(legacy: LegacySpoolFile) -> SpoolFile:
    """Upgrade a version 1 spool file to the current format."""
    records = []
    for record in legacy.legacy_records:
        records.append(
            UsageWireRecord.model_validate(
                {
                    "usage_date": record.date,
                    # version 1 files carry neither provider nor model
                    "provider": "unknown",
                    "model": "unknown",
                    "input_tokens": record.token_count,
                    "output_tokens": 0,
                    "total_tokens": record.token_count,
                    "request_count": 1,
                    "cost_actual": float(record.total_price),
                    "currency": record.currency,
                    "metadata": {
                        "source_system": "dify",
                        "source_event_id": record.idempotency_key,
                        "source_app_id": record.app_id,
                        "source_app_name": record.app_name,
                        "aggregation_method": "daily_sum",
                    },
                }
            )
        )

    return SpoolFile(
        batch_idempotency_key=legacy.batch_idempotency_key or compute_batch_key(records),
        records=records,
        first_attempt=legacy.first_attempt or legacy.created_at,
        retry_count=legacy.retry_count,
        last_error=legacy.last_error or "",
    )


class SpoolManager:
    """
    Save, list, update, quarantine and delete spooled batches.

    Listings are sorted by first_attempt, oldest first. Corrupted spool
    files are moved to the failed directory as soon as they are seen.
    """

    def __init__(
        self,
        spool_dir: str | Path = "data/spool",
        failed_dir: str | Path = "data/failed",
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.spool_dir = Path(spool_dir)
        self.failed_dir = Path(failed_dir)
        self.notifier = notifier
        self.clock = clock

    # Writes

    async def save_to_spool(
        self,
        records: Sequence[UsageWireRecord],
        last_error: str = "",
        batch_idempotency_key: Optional[str] = None,
    ) -> SpoolFile:
        """
        Persist an undelivered batch.

        Raises:
            SpoolError: the batch could not be written
        """
        now = self.clock()
        key = batch_idempotency_key or compute_batch_key(records)
        filename = f"{SPOOL_PREFIX}_{now.strftime('%Y%m%dT%H%M%S%fZ')}_{key}.json"

        spool_file = SpoolFile(
            batch_idempotency_key=key,
            records=list(records),
            first_attempt=to_iso_instant(now),
            retry_count=0,
            last_error=last_error,
            filename=filename,
        )

        try:
            await asyncio.to_thread(write_file_atomic, self.spool_dir / filename, spool_file.to_json())
        except OSError as e:
            logger.error("Failed to save spool file", filename=filename, error=str(e))
            raise SpoolError(f"Failed to save spool file {filename}: {e}") from e

        logger.info("Spool file saved", filename=filename, record_count=len(spool_file.records))
        return spool_file

    async def update_spool_file(self, spool_file: SpoolFile) -> None:
        """
        Rewrite a spool file with new retry bookkeeping.

        The old file is deleted before the new one is written.
        """
        filename = self._require_filename(spool_file)
        path = self.spool_dir / filename

        def _rewrite() -> None:
            path.unlink(missing_ok=True)
            write_file_atomic(path, spool_file.to_json())

        await asyncio.to_thread(_rewrite)
        logger.info(
            "Spool file updated",
            filename=filename,
            retry_count=spool_file.retry_count,
            last_error=spool_file.last_error,
        )

    async def move_to_failed(self, spool_file: SpoolFile) -> Path:
        """
        Quarantine a batch: write it to the failed directory, delete the
        spool copy, then notify. Notification failures are logged only.
        """
        filename = self._require_filename(spool_file)
        failed_name = self._failed_name(filename, spool_file.batch_idempotency_key)
        failed_path = self.failed_dir / failed_name

        def _move() -> None:
            write_file_atomic(failed_path, spool_file.to_json())
            (self.spool_dir / filename).unlink(missing_ok=True)

        await asyncio.to_thread(_move)
        logger.warning(
            "Moved to failed directory",
            filename=filename,
            dest_path=str(failed_path),
            retry_count=spool_file.retry_count,
        )

        await self._notify(spool_file, failed_path)
        return failed_path

    async def delete_spool_file(self, filename: str) -> None:
        path = self.spool_dir / _safe_name(filename)
        await asyncio.to_thread(path.unlink)
        logger.info("Spool file deleted", file_path=str(path))

    async def delete_failed_file(self, filename: str) -> None:
        path = self.failed_dir / _safe_name(filename)
        await asyncio.to_thread(path.unlink)
        logger.info("Failed file deleted", file_path=str(path))

    # Reads

    async def list_spool_files(self) -> list[SpoolFile]:
        return await asyncio.to_thread(self._list, self.spool_dir, True)

    async def list_failed_files(self) -> list[SpoolFile]:
        return await asyncio.to_thread(self._list, self.failed_dir, False)

    async def get_failed_file(self, filename: str) -> Optional[SpoolFile]:
        """Look up a failed batch by the file name shown to operators."""
        try:
            path = self.failed_dir / _safe_name(filename)
        except ValueError:
            return None
        return await asyncio.to_thread(self._read, path, False)

    # Internals

    def _list(self, directory: Path, is_spool: bool) -> list[SpoolFile]:
        if not directory.is_dir():
            return []

        files = []
        for path in directory.iterdir():
            if not path.is_file() or path.suffix != ".json":
                continue
            if is_spool and not path.name.startswith(SPOOL_PREFIX):
                continue
            spool_file = self._read(path, is_spool)
            if spool_file is not None:
                files.append(spool_file)

        return sorted(files, key=_sort_key)

    def _read(self, path: Path, is_spool: bool) -> Optional[SpoolFile]:
        try:
            content = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("Failed to read spool file", file_path=str(path), error=str(e))
            return None

        try:
            data = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return self._corrupted(path, is_spool, str(e))

        try:
            spool_file = SpoolFile.model_validate(data)
            return spool_file.model_copy(update={"filename": path.name})
        except ValidationError as current_error:
            try:
                legacy = LegacySpoolFile.model_validate(data)
                if not legacy.legacy_records:
                    raise ValueError("legacy spool file has no records")
                spool_file = convert_legacy_spool_file(legacy)
            except (ValidationError, ValueError):
                return self._corrupted(path, is_spool, str(current_error))

        spool_file = spool_file.model_copy(update={"filename": path.name})
        logger.warning(
            "Converted legacy spool file",
            file_path=str(path),
            record_count=len(spool_file.records),
        )
        if is_spool:
            try:
                write_file_atomic(path, spool_file.to_json())
            except OSError as e:
                logger.error("Failed to rewrite legacy spool file", file_path=str(path), error=str(e))
        return spool_file

    def _corrupted(self, path: Path, is_spool: bool, error: str) -> None:
        if not is_spool:
            logger.error("Invalid failed file schema", file_path=str(path), error=error)
            return None

        logger.error("Corrupted spool file detected", file_path=str(path), error=error)
        try:
            self.failed_dir.mkdir(parents=True, exist_ok=True)
            path.replace(self.failed_dir / path.name)
            logger.warning("Moved corrupted spool file to failed directory", filename=path.name)
        except OSError as e:
            logger.error("Failed to move corrupted spool file", file_path=str(path), error=str(e))
        return None

    async def _notify(self, spool_file: SpoolFile, failed_path: Path) -> None:
        if self.notifier is None:
            return
        message = ErrorNotification(
            title="Usage batch moved to failed directory",
            file_path=str(failed_path),
            last_error=spool_file.last_error,
            first_attempt=spool_file.first_attempt,
            retry_count=spool_file.retry_count,
        )
        try:
            await self.notifier.send_error_notification(message)
        except Exception as e:
            logger.error("Failed to send error notification", error=str(e))

    @staticmethod
    def _require_filename(spool_file: SpoolFile) -> str:
        if not spool_file.filename:
            raise ValueError("spool file has no file name; it was not read from or saved to disk")
        return _safe_name(spool_file.filename)

    @staticmethod
    def _failed_name(spool_name: str, batch_key: str) -> str:
        if spool_name.startswith(f"{SPOOL_PREFIX}_"):
            return FAILED_PREFIX + spool_name[len(SPOOL_PREFIX):]
        stem = Path(spool_name).stem.replace(SPOOL_PREFIX, "", 1).strip("-_")
        return f"{FAILED_PREFIX}_{stem}_{batch_key}.json"
