"""
Spool Manager Tests
===================
Tests for durable storage of undelivered batches.
"""

import json
import stat
from datetime import datetime, timezone
from pathlib import Path

import pytest

from dify_usage_exporter.core.transformer import compute_batch_key
from dify_usage_exporter.notifier import ErrorNotification
from dify_usage_exporter.schemas.spool import SpoolFile
from dify_usage_exporter.sender.spool import SpoolManager

from tests.conftest import make_wire_record


def _spool_json(first_attempt: str, key: str = "k", retry_count: int = 0) -> str:
    spool_file = SpoolFile(
        batch_idempotency_key=key,
        records=[make_wire_record()],
        first_attempt=first_attempt,
        retry_count=retry_count,
    )
    return spool_file.to_json()


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: list[ErrorNotification] = []

    async def send_error_notification(self, message: ErrorNotification) -> None:
        self.messages.append(message)
        if self.fail:
            raise RuntimeError("webhook down")


class TestSaveAndList:
    """Tests for saving and listing spool files."""

    @pytest.mark.asyncio
    async def test_round_trip(self, spool_manager: SpoolManager):
        """Test a saved batch is listed back unchanged."""
        records = [make_wire_record(), make_wire_record(model="gpt-4")]
        saved = await spool_manager.save_to_spool(records, last_error="HTTP 503")

        [listed] = await spool_manager.list_spool_files()

        assert listed.records == records
        assert listed.batch_idempotency_key == compute_batch_key(records)
        assert listed.first_attempt == "2025-12-06T09:30:00.123Z"
        assert listed.retry_count == 0
        assert listed.last_error == "HTTP 503"
        assert listed.filename == saved.filename
        assert saved.filename.startswith("spool_20251206T093000123000Z_")

    @pytest.mark.asyncio
    async def test_file_format(self, spool_manager: SpoolManager):
        """Test the on-disk JSON uses camelCase keys and owner-only permissions."""
        saved = await spool_manager.save_to_spool([make_wire_record()])
        path = spool_manager.spool_dir / saved.filename

        data = json.loads(path.read_text())
        assert data["version"] == "2.0.0"
        assert {"batchIdempotencyKey", "firstAttempt", "retryCount", "lastError"} <= data.keys()
        assert "filename" not in data
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert not list(spool_manager.spool_dir.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_sorted_by_first_attempt(self, spool_manager: SpoolManager):
        """Test listings are oldest first regardless of file names."""
        spool_dir = spool_manager.spool_dir
        spool_dir.mkdir(parents=True)
        (spool_dir / "spool_a.json").write_text(_spool_json("2025-12-03T00:00:00.000Z", "c"))
        (spool_dir / "spool_b.json").write_text(_spool_json("2025-12-01T00:00:00.000Z", "a"))
        (spool_dir / "spool_c.json").write_text(_spool_json("2025-12-02T00:00:00.000Z", "b"))

        files = await spool_manager.list_spool_files()

        assert [f.batch_idempotency_key for f in files] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_failed_files_sorted_by_first_attempt(self, spool_manager: SpoolManager):
        """Test the failed listing is oldest first too."""
        failed_dir = spool_manager.failed_dir
        failed_dir.mkdir(parents=True)
        (failed_dir / "failed_a.json").write_text(_spool_json("2025-12-03T00:00:00.000Z", "c", 10))
        (failed_dir / "failed_b.json").write_text(_spool_json("2025-12-01T00:00:00.000Z", "a", 10))
        (failed_dir / "failed_c.json").write_text(_spool_json("2025-12-02T00:00:00.000Z", "b", 10))

        files = await spool_manager.list_failed_files()

        assert [f.batch_idempotency_key for f in files] == ["a", "b", "c"]
        assert [f.filename for f in files] == ["failed_b.json", "failed_c.json", "failed_a.json"]

    @pytest.mark.asyncio
    async def test_ignores_other_files(self, spool_manager: SpoolManager):
        spool_dir = spool_manager.spool_dir
        spool_dir.mkdir(parents=True)
        (spool_dir / "notes.txt").write_text("hello")
        (spool_dir / "other.json").write_text("{}")

        assert await spool_manager.list_spool_files() == []
        assert (spool_dir / "other.json").exists()

    @pytest.mark.asyncio
    async def test_missing_directories(self, tmp_path: Path):
        manager = SpoolManager(tmp_path / "nope", tmp_path / "nope-failed")
        assert await manager.list_spool_files() == []
        assert await manager.list_failed_files() == []


class TestUpdate:
    """Tests for retry bookkeeping."""

    @pytest.mark.asyncio
    async def test_first_attempt_preserved(self, spool_manager: SpoolManager):
        """Test updates change retry fields but keep first_attempt."""
        saved = await spool_manager.save_to_spool([make_wire_record()])
        updated = saved.model_copy(update={"retry_count": 3, "last_error": "HTTP 502"})

        await spool_manager.update_spool_file(updated)
        [listed] = await spool_manager.list_spool_files()

        assert listed.retry_count == 3
        assert listed.last_error == "HTTP 502"
        assert listed.first_attempt == saved.first_attempt

    @pytest.mark.asyncio
    async def test_delete(self, spool_manager: SpoolManager):
        saved = await spool_manager.save_to_spool([make_wire_record()])
        await spool_manager.delete_spool_file(saved.filename)
        assert await spool_manager.list_spool_files() == []

    @pytest.mark.asyncio
    async def test_delete_rejects_paths(self, spool_manager: SpoolManager):
        """Test file names cannot escape the spool directory."""
        with pytest.raises(ValueError):
            await spool_manager.delete_spool_file("../watermark.json")


class TestFailedDirectory:
    """Tests for quarantine."""

    @pytest.mark.asyncio
    async def test_move_to_failed(self, tmp_path: Path):
        """Test the batch moves and a notification is sent."""
        notifier = RecordingNotifier()
        manager = SpoolManager(tmp_path / "spool", tmp_path / "failed", notifier=notifier)
        saved = await manager.save_to_spool([make_wire_record()])
        exhausted = saved.model_copy(update={"retry_count": 10, "last_error": "HTTP 503"})

        failed_path = await manager.move_to_failed(exhausted)

        assert await manager.list_spool_files() == []
        assert failed_path.name == "failed" + saved.filename[len("spool"):]
        [failed] = await manager.list_failed_files()
        assert failed.retry_count == 10
        assert failed.first_attempt == saved.first_attempt

        [message] = notifier.messages
        assert message.file_path == str(failed_path)
        assert message.retry_count == 10
        assert message.last_error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_notification_failure_is_logged(self, tmp_path: Path):
        """Test a failing notifier does not undo the move."""
        manager = SpoolManager(tmp_path / "spool", tmp_path / "failed", notifier=RecordingNotifier(fail=True))
        saved = await manager.save_to_spool([make_wire_record()])

        await manager.move_to_failed(saved)

        assert len(await manager.list_failed_files()) == 1

    @pytest.mark.asyncio
    async def test_get_and_delete_failed_file(self, spool_manager: SpoolManager):
        saved = await spool_manager.save_to_spool([make_wire_record()])
        failed_path = await spool_manager.move_to_failed(saved)

        found = await spool_manager.get_failed_file(failed_path.name)
        assert found is not None
        assert found.filename == failed_path.name
        assert await spool_manager.get_failed_file("failed_missing.json") is None
        assert await spool_manager.get_failed_file("../spool/x.json") is None

        await spool_manager.delete_failed_file(failed_path.name)
        assert await spool_manager.list_failed_files() == []


class TestCorruptAndLegacy:
    """Tests for unreadable and version 1 spool files."""

    @pytest.mark.asyncio
    async def test_corrupt_json_moved(self, spool_manager: SpoolManager):
        """Test invalid JSON is moved to the failed directory and skipped."""
        spool_manager.spool_dir.mkdir(parents=True)
        (spool_manager.spool_dir / "spool_broken.json").write_text("{not json")

        assert await spool_manager.list_spool_files() == []
        assert (spool_manager.failed_dir / "spool_broken.json").exists()
        assert not (spool_manager.spool_dir / "spool_broken.json").exists()

    @pytest.mark.asyncio
    async def test_schema_violation_moved(self, spool_manager: SpoolManager):
        spool_manager.spool_dir.mkdir(parents=True)
        (spool_manager.spool_dir / "spool_bad.json").write_text(json.dumps({"version": "2.0.0"}))

        assert await spool_manager.list_spool_files() == []
        assert (spool_manager.failed_dir / "spool_bad.json").exists()

    @pytest.mark.asyncio
    async def test_undecodable_bytes_moved(self, spool_manager: SpoolManager):
        """Test a binary spool file is quarantined instead of breaking the listing."""
        spool_manager.spool_dir.mkdir(parents=True)
        (spool_manager.spool_dir / "spool_binary.json").write_bytes(b"\xff\xfe\x00garbage")

        assert await spool_manager.list_spool_files() == []
        assert (spool_manager.failed_dir / "spool_binary.json").exists()
        assert not (spool_manager.spool_dir / "spool_binary.json").exists()

    @pytest.mark.asyncio
    async def test_legacy_file_converted(self, spool_manager: SpoolManager):
        """Test version 1 files are upgraded and rewritten."""
        legacy = {
            "batchIdempotencyKey": "legacy-key",
            "records": [
                {
                    "date": "2025-11-20",
                    "app_id": "app-1",
                    "app_name": "Support Bot",
                    "token_count": 1200,
                    "total_price": "0.0123",
                    "currency": "USD",
                    "idempotency_key": "2025-11-20_app-1",
                    "transformed_at": "2025-11-21T00:00:00.000Z",
                }
            ],
            "createdAt": "2025-11-21T00:00:00.000Z",
            "retryCount": 2,
        }
        spool_manager.spool_dir.mkdir(parents=True)
        path = spool_manager.spool_dir / "spool_legacy.json"
        path.write_text(json.dumps(legacy))

        [converted] = await spool_manager.list_spool_files()

        [record] = converted.records
        assert record.provider == "unknown"
        assert record.model == "unknown"
        assert record.input_tokens == 1200
        assert record.output_tokens == 0
        assert record.total_tokens == 1200
        assert record.cost_actual == pytest.approx(0.0123)
        assert record.metadata.source_event_id == "2025-11-20_app-1"
        assert converted.batch_idempotency_key == "legacy-key"
        assert converted.first_attempt == "2025-11-21T00:00:00.000Z"
        assert converted.retry_count == 2

        assert json.loads(path.read_text())["version"] == "2.0.0"
