"""Tests for usage aggregation."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from tokentally.telemetry.aggregator import (
    AggregatedSummary,
    HourlyBucket,
    UsageAggregator,
    UsageCounters,
    datetime_to_nanos,
    fold_summary,
    nanos_to_datetime,
    truncate_to_hour,
)
from tokentally.telemetry.extractors import (
    RawLogEvent,
    RawMetricPoint,
    extract_all_points,
)
from tokentally.telemetry.parser import decode_payload

NOW = datetime(2025, 1, 8, 12, 30, tzinfo=timezone.utc)


def make_point(
    name: str,
    value: float,
    at: datetime | None = NOW,
    token_type: str | None = None,
) -> RawMetricPoint:
    """Create a test metric point."""
    attributes = {"token_type": token_type} if token_type else {}
    return RawMetricPoint(
        metric_name=f"claude_code.{name}",
        attributes=attributes,
        timestamp_nanos=datetime_to_nanos(at) if at is not None else None,
        value=value,
    )


def make_event(name: str, at: datetime | None = NOW) -> RawLogEvent:
    """Create a test log event."""
    return RawLogEvent(
        event_name=f"claude_code.{name}",
        timestamp_nanos=datetime_to_nanos(at) if at is not None else None,
    )


def make_line(*metrics: tuple[str, dict]) -> str:
    """Create one NDJSON metrics line from (name, data point) pairs."""
    return json.dumps(
        {
            "resourceMetrics": [
                {
                    "scopeMetrics": [
                        {
                            "metrics": [
                                {"name": name, "sum": {"dataPoints": [data_point]}}
                                for name, data_point in metrics
                            ]
                        }
                    ]
                }
            ]
        }
    )


class TestTimeHelpers:
    """Tests for timestamp conversion."""

    def test_round_trip(self):
        """Test datetime to nanos and back."""
        moment = datetime(2025, 1, 8, 12, 30, 15, 123456, tzinfo=timezone.utc)
        assert nanos_to_datetime(datetime_to_nanos(moment)) == moment

    def test_naive_is_utc(self):
        """Test that naive datetimes are taken as UTC."""
        naive = datetime(2025, 1, 8, 12, 0)
        aware = datetime(2025, 1, 8, 12, 0, tzinfo=timezone.utc)
        assert datetime_to_nanos(naive) == datetime_to_nanos(aware)

    def test_truncate_to_hour(self):
        """Test hour truncation."""
        nanos = datetime_to_nanos(datetime(2025, 1, 8, 12, 59, 59, tzinfo=timezone.utc))
        assert truncate_to_hour(nanos) == datetime(2025, 1, 8, 12, 0, tzinfo=timezone.utc)


class TestUsageCounters:
    """Tests for UsageCounters."""

    def test_defaults(self):
        """Test that every counter starts at zero."""
        counters = UsageCounters()
        assert counters.is_empty()
        assert counters.total_tokens == 0

    def test_add(self):
        """Test adding to float and integer counters."""
        counters = UsageCounters()
        counters.add("total_cost_usd", 0.25)
        counters.add("input_tokens", 100.9)

        assert counters.total_cost_usd == 0.25
        assert counters.input_tokens == 100
        assert not counters.is_empty()

    def test_add_ignores_negative_and_non_finite(self):
        """Test that counters never decrease."""
        counters = UsageCounters()
        counters.add("output_tokens", -5)
        counters.add("total_cost_usd", float("nan"))
        counters.add("total_cost_usd", float("inf"))

        assert counters.is_empty()

    def test_merge(self):
        """Test merging two counter sets."""
        first = UsageCounters(input_tokens=10, total_cost_usd=0.5)
        second = UsageCounters(input_tokens=5, prompt_count=2)
        first.merge(second)

        assert first.input_tokens == 15
        assert first.prompt_count == 2
        assert first.total_cost_usd == 0.5


class TestAggregatedSummary:
    """Tests for AggregatedSummary."""

    def test_to_dict(self):
        """Test JSON serialization."""
        summary = AggregatedSummary(input_tokens=100, output_tokens=50, last_updated=NOW)
        data = summary.to_dict()

        assert data["input_tokens"] == 100
        assert data["total_tokens"] == 150
        assert data["last_updated"] == NOW.isoformat()
        json.dumps(data)

    def test_to_dict_without_update_time(self):
        """Test serialization before any source was seen."""
        assert AggregatedSummary().to_dict()["last_updated"] is None


class TestFold:
    """Tests for UsageAggregator.fold()."""

    def test_metric_dispatch(self):
        """Test each metric name lands in its counter."""
        points = [
            make_point("cost.usage", 0.01),
            make_point("token.usage", 100, token_type="input"),
            make_point("token.usage", 50, token_type="output"),
            make_point("session.count", 1),
            make_point("active_time.total", 30),
            make_point("lines_of_code.count", 12),
            make_point("commit.count", 2),
            make_point("pull_request.count", 1),
        ]

        summary = UsageAggregator().fold(points)

        assert summary.total_cost_usd == pytest.approx(0.01)
        assert summary.input_tokens == 100
        assert summary.output_tokens == 50
        assert summary.session_count == 1
        assert summary.active_time_seconds == 30
        assert summary.lines_of_code == 12
        assert summary.commit_count == 2
        assert summary.pull_request_count == 1
        assert summary.last_updated is None

    def test_event_dispatch(self):
        """Test log events increment their counters once each."""
        events = [
            make_event("user_prompt"),
            make_event("api_request"),
            make_event("api_request"),
            make_event("tool_result"),
            RawLogEvent(event_name=None),
        ]

        summary = UsageAggregator().fold([], events)

        assert summary.prompt_count == 1
        assert summary.api_request_count == 2

    def test_unknown_metric_ignored(self):
        """Test that unrecognized metrics leave counters alone."""
        summary = UsageAggregator().fold([make_point("code_edit_tool.decision", 3)])
        assert summary.is_empty()

    def test_cache_token_types_not_counted(self):
        """Test that cache token types are not input or output."""
        points = [
            make_point("token.usage", 500, token_type="cacheRead"),
            make_point("token.usage", 200, token_type="cacheCreation"),
        ]

        summary = UsageAggregator().fold(points)

        assert summary.total_tokens == 0

    def test_since_excludes_older_points(self):
        """Test that points strictly before since are dropped."""
        since = NOW - timedelta(minutes=10)
        points = [
            make_point("cost.usage", 1.0, at=since - timedelta(seconds=1)),
            make_point("cost.usage", 2.0, at=since),
            make_point("cost.usage", 4.0, at=NOW),
        ]
        events = [
            make_event("api_request", at=since - timedelta(microseconds=1)),
            make_event("api_request", at=NOW),
        ]

        summary = UsageAggregator().fold(points, events, since=since)

        assert summary.total_cost_usd == pytest.approx(6.0)
        assert summary.api_request_count == 1

    def test_untimestamped_included(self):
        """Test that points without a timestamp always count in flat folds."""
        points = [make_point("session.count", 1, at=None)]
        events = [make_event("user_prompt", at=None)]

        summary = UsageAggregator().fold(points, events, since=NOW + timedelta(days=1))

        assert summary.session_count == 1
        assert summary.prompt_count == 1

    def test_fold_summary_convenience(self):
        """Test the module-level fold_summary()."""
        summary = fold_summary([make_point("commit.count", 3)])
        assert summary.commit_count == 3


class TestTokenTypeFallback:
    """Tests for token usage without a token_type attribute."""

    def test_default_is_input(self, caplog):
        """Test unlabeled tokens count as input and are logged."""
        with caplog.at_level(logging.WARNING, logger="tokentally.telemetry.aggregator"):
            summary = UsageAggregator().fold([make_point("token.usage", 40)])

        assert summary.input_tokens == 40
        assert summary.output_tokens == 0
        assert "1 token usage point(s) had no token_type" in caplog.text

    def test_output_fallback(self):
        """Test routing unlabeled tokens to output."""
        summary = UsageAggregator("output").fold([make_point("token.usage", 40)])
        assert summary.output_tokens == 40

    def test_ignore_fallback(self):
        """Test dropping unlabeled tokens."""
        summary = UsageAggregator("ignore").fold([make_point("token.usage", 40)])
        assert summary.total_tokens == 0

    def test_invalid_fallback(self):
        """Test that an unknown fallback is rejected."""
        with pytest.raises(ValueError, match="Invalid token_type fallback"):
            UsageAggregator("cache")

    def test_labeled_points_not_reported(self, caplog):
        """Test no warning when every point is labeled."""
        with caplog.at_level(logging.WARNING, logger="tokentally.telemetry.aggregator"):
            UsageAggregator().fold([make_point("token.usage", 1, token_type="input")])

        assert caplog.text == ""


class TestFoldHourly:
    """Tests for UsageAggregator.fold_hourly()."""

    def test_three_hours_three_buckets(self):
        """Test points spanning three hours give three sorted buckets."""
        base = datetime(2025, 1, 8, 9, 0, tzinfo=timezone.utc)
        points = [
            make_point("cost.usage", 0.5, at=base + timedelta(hours=2, minutes=5)),
            make_point("token.usage", 10, at=base + timedelta(minutes=1), token_type="input"),
            make_point("token.usage", 20, at=base + timedelta(minutes=59), token_type="output"),
            make_point("cost.usage", 0.25, at=base + timedelta(hours=1, minutes=30)),
            make_point("session.count", 1, at=base + timedelta(hours=2, minutes=59, seconds=59)),
        ]
        events = [make_event("api_request", at=base + timedelta(hours=1))]

        buckets = UsageAggregator().fold_hourly(points, events)

        assert [b.hour_start for b in buckets] == [
            base,
            base + timedelta(hours=1),
            base + timedelta(hours=2),
        ]
        assert buckets[0].input_tokens == 10
        assert buckets[0].output_tokens == 20
        assert buckets[0].total_cost_usd == 0
        assert buckets[1].total_cost_usd == pytest.approx(0.25)
        assert buckets[1].api_request_count == 1
        assert buckets[2].total_cost_usd == pytest.approx(0.5)
        assert buckets[2].session_count == 1

    def test_buckets_sum_to_flat_fold(self):
        """Test that bucket totals equal the flat fold from the earliest hour."""
        base = datetime(2025, 1, 8, 9, 0, tzinfo=timezone.utc)
        points = [
            make_point("cost.usage", 0.1, at=base + timedelta(minutes=10)),
            make_point("cost.usage", 0.2, at=base + timedelta(hours=1, minutes=10)),
            make_point("token.usage", 7, at=base + timedelta(hours=2), token_type="input"),
            make_point("active_time.total", 60, at=base + timedelta(hours=2, minutes=30)),
        ]
        aggregator = UsageAggregator()

        buckets = aggregator.fold_hourly(points)
        flat = aggregator.fold(points, since=base)

        combined = UsageCounters()
        for bucket in buckets:
            combined.merge(bucket)
        assert len(buckets) == 3
        assert combined.total_cost_usd == pytest.approx(flat.total_cost_usd)
        assert combined.input_tokens == flat.input_tokens
        assert combined.active_time_seconds == flat.active_time_seconds

    def test_untimestamped_excluded(self):
        """Test that points without timestamps make no bucket."""
        buckets = UsageAggregator().fold_hourly(
            [make_point("cost.usage", 1.0, at=None)],
            [make_event("api_request", at=None)],
        )
        assert buckets == []

    def test_sparse(self):
        """Test that empty hours produce no bucket."""
        base = datetime(2025, 1, 8, 0, 0, tzinfo=timezone.utc)
        points = [
            make_point("cost.usage", 1.0, at=base),
            make_point("cost.usage", 1.0, at=base + timedelta(hours=5)),
        ]

        buckets = UsageAggregator().fold_hourly(points)

        assert len(buckets) == 2

    def test_unrecognized_points_make_no_bucket(self):
        """Test that unknown metrics and events do not create buckets."""
        buckets = UsageAggregator("ignore").fold_hourly(
            [make_point("unknown.metric", 1.0), make_point("token.usage", 5)],
            [make_event("tool_result")],
        )
        assert buckets == []

    def test_since_applies(self):
        """Test the lower bound in hourly mode."""
        points = [
            make_point("cost.usage", 1.0, at=NOW - timedelta(hours=3)),
            make_point("cost.usage", 1.0, at=NOW),
        ]

        buckets = UsageAggregator().fold_hourly(points, since=NOW - timedelta(hours=1))

        assert len(buckets) == 1
        assert buckets[0].hour_start == datetime(2025, 1, 8, 12, 0, tzinfo=timezone.utc)

    def test_bucket_to_dict(self):
        """Test bucket serialization."""
        bucket = HourlyBucket(hour_start=NOW.replace(minute=0), output_tokens=3)
        data = bucket.to_dict()

        assert data["hour_start"] == "2025-01-08T12:00:00+00:00"
        assert data["total_tokens"] == 3


class TestEndToEnd:
    """Tests running NDJSON text through decode, extract and fold."""

    def _payload(self, at: datetime) -> str:
        nanos = str(datetime_to_nanos(at))
        line1 = make_line(
            ("claude_code.cost.usage", {"asDouble": 0.01, "timeUnixNano": nanos}),
            (
                "claude_code.token.usage",
                {
                    "asInt": "100",
                    "timeUnixNano": nanos,
                    "attributes": [{"key": "token_type", "value": {"stringValue": "input"}}],
                },
            ),
        )
        line2 = make_line(
            (
                "claude_code.token.usage",
                {
                    "asInt": "50",
                    "timeUnixNano": nanos,
                    "attributes": [{"key": "token_type", "value": {"stringValue": "output"}}],
                },
            ),
            ("claude_code.session.count", {"asInt": "1", "timeUnixNano": nanos}),
        )
        return line1 + "\n" + line2 + "\n"

    def test_two_line_payload(self):
        """Test the two-line payload aggregated over the last hour."""
        points = extract_all_points(decode_payload(self._payload(NOW)))

        summary = UsageAggregator().fold(points, since=NOW - timedelta(hours=1))

        assert summary.total_cost_usd == pytest.approx(0.01)
        assert summary.input_tokens == 100
        assert summary.output_tokens == 50
        assert summary.session_count == 1

    def test_future_since_is_empty(self):
        """Test that a since in the future yields all zero."""
        points = extract_all_points(decode_payload(self._payload(NOW)))

        summary = UsageAggregator().fold(points, since=NOW + timedelta(hours=1))

        assert summary.is_empty()

    def test_corrupt_middle_line(self):
        """Test that a corrupt line between good ones loses nothing else."""
        lines = self._payload(NOW).splitlines()
        payload = "\n".join([lines[0], "{not json", lines[1]])

        summary = UsageAggregator().fold(extract_all_points(decode_payload(payload)))

        assert summary.input_tokens == 100
        assert summary.output_tokens == 50
