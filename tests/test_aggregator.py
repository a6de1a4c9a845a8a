"""
Aggregator Tests
================
Tests for daily roll-up of per-execution usage.
"""

import pytest

from dify_usage_exporter.core.aggregator import aggregate_model_usage, merge_normalized
from dify_usage_exporter.core.normalizer import Normalizer
from dify_usage_exporter.schemas.usage import RawModelUsageRecord

from tests.conftest import make_normalized


def _raw(**overrides) -> RawModelUsageRecord:
    values = {
        "date": "2025-12-01",
        "app_id": "app-1",
        "app_name": "Support Bot",
        "user_id": "user-1",
        "model_provider": "openai",
        "model_name": "gpt-4o",
        "prompt_tokens": 100,
        "completion_tokens": 50,
        "total_tokens": 150,
        "prompt_price": 0.1,
        "completion_price": 0.2,
        "total_price": 0.3,
    }
    values.update(overrides)
    return RawModelUsageRecord(**values)


class TestAggregateModelUsage:
    """Tests for aggregate_model_usage."""

    def test_sums_group(self):
        """Test executions of one group are summed with exact prices."""
        [record] = aggregate_model_usage([_raw(), _raw(), _raw()])

        assert record.period == "2025-12-01"
        assert record.prompt_tokens == 300
        assert record.total_tokens == 450
        assert record.total_price == "0.9"
        assert record.execution_count == 3

    def test_separate_groups(self):
        """Test different users and models are kept apart."""
        records = aggregate_model_usage(
            [_raw(), _raw(user_id="user-2"), _raw(model_name="gpt-4"), _raw(date="2025-12-02")]
        )
        assert len(records) == 4

    def test_sorted_output(self):
        """Test output order follows the grouping key."""
        records = aggregate_model_usage([_raw(date="2025-12-03"), _raw(date="2025-12-01")])
        assert [r.period for r in records] == ["2025-12-01", "2025-12-03"]

    def test_empty(self):
        assert aggregate_model_usage([]) == []


class TestMergeNormalized:
    """Tests for merging records that normalize onto the same identity."""

    def test_provider_aliases_merged(self):
        """Test bedrock and aws-bedrock usage of one user ends up in one record."""
        raw = [
            _raw(model_provider="bedrock", model_name="claude-3-5-sonnet", total_price=0.1),
            _raw(model_provider="aws-bedrock", model_name="claude-3-5-sonnet", total_price=0.2),
        ]
        normalized = Normalizer().normalize(aggregate_model_usage(raw))
        assert len(normalized) == 2

        [record] = merge_normalized(normalized)

        assert record.provider == "aws"
        assert record.input_tokens == 200
        assert record.output_tokens == 100
        assert record.total_tokens == 300
        assert record.cost_actual == pytest.approx(0.3)

    def test_distinct_records_kept(self):
        records = [make_normalized(user_id="user-1"), make_normalized(user_id="user-2")]
        assert merge_normalized(records) == records
