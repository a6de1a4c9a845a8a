"""
Idempotency Key Tests
=====================
Tests for record, batch and source event keys.
"""

import hashlib

import pytest

from dify_usage_exporter.core.idempotency import batch_key, record_key, source_event_id


class TestRecordKey:
    """Tests for per-record keys."""

    def test_format(self):
        """Test the key joins its parts with underscores."""
        assert record_key("2025-12-01", "app-1", "openai", "gpt-4") == "2025-12-01_app-1_openai_gpt-4"


class TestBatchKey:
    """Tests for batch keys."""

    def test_order_independent(self):
        """Test the same keys in any order give the same batch key."""
        keys = ["b", "a", "c"]
        assert batch_key(keys) == batch_key(reversed(keys))

    def test_sha256_of_sorted_keys(self):
        """Test the digest is taken over the comma joined sorted keys."""
        expected = hashlib.sha256(b"a,b").hexdigest()
        assert batch_key(["b", "a"]) == expected
        assert len(expected) == 64

    def test_empty(self):
        """Test an empty batch has an empty key."""
        assert batch_key([]) == ""


class TestSourceEventId:
    """Tests for partner side dedup ids."""

    def test_deterministic(self):
        """Test identical inputs give identical ids."""
        first = source_event_id("2025-12-01", "aws", "claude-3-5-sonnet-20241022", "app-1", "user-1")
        second = source_event_id("2025-12-01", "aws", "claude-3-5-sonnet-20241022", "app-1", "user-1")
        assert first == second

    def test_format(self):
        """Test the id prefix and 12 character hash suffix."""
        event_id = source_event_id("2025-12-01", "openai", "gpt-4o-2024-08-06")
        prefix = "dify-2025-12-01-openai-gpt-4o-2024-08-06-"
        assert event_id.startswith(prefix)
        suffix = event_id[len(prefix):]
        assert len(suffix) == 12
        int(suffix, 16)

    def test_user_changes_id(self):
        """Test different users of the same model get different ids."""
        a = source_event_id("2025-12-01", "openai", "gpt-4", "app-1", "user-1")
        b = source_event_id("2025-12-01", "openai", "gpt-4", "app-1", "user-2")
        assert a != b

    @pytest.mark.parametrize(
        "field, value",
        [
            ("usage_date", "2025-12-02"),
            ("provider", "aws"),
            ("model", "gpt-4o-2024-08-06"),
            ("app_id", "app-2"),
            ("user_id", "user-2"),
        ],
    )
    def test_any_field_changes_id(self, field, value):
        """Test every identity field feeds into the id."""
        base = {
            "usage_date": "2025-12-01",
            "provider": "openai",
            "model": "gpt-4",
            "app_id": "app-1",
            "user_id": "user-1",
        }
        changed = {**base, field: value}
        assert source_event_id(**base) != source_event_id(**changed)
