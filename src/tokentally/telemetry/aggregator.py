"""Aggregation of raw telemetry into usage summaries.

Points and events are folded one at a time into counters. A flat fold
produces one AggregatedSummary for everything at or after a lower bound;
an hourly fold produces one HourlyBucket per UTC hour that saw data.

Usage:
    from tokentally.telemetry.aggregator import UsageAggregator

    aggregator = UsageAggregator()
    summary = aggregator.fold(points, events, since=window_start)
    buckets = aggregator.fold_hourly(points, events, since=day_ago)
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from tokentally.telemetry.extractors import RawLogEvent, RawMetricPoint

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
NANOS_PER_SECOND = 1_000_000_000
NANOS_PER_HOUR = 3600 * NANOS_PER_SECOND

COST_METRIC = "claude_code.cost.usage"
TOKEN_METRIC = "claude_code.token.usage"
TOKEN_TYPE_ATTRIBUTE = "token_type"

# Metric name -> counter field. Token usage is routed separately.
METRIC_FIELDS: dict[str, str] = {
    COST_METRIC: "total_cost_usd",
    "claude_code.session.count": "session_count",
    "claude_code.active_time.total": "active_time_seconds",
    "claude_code.lines_of_code.count": "lines_of_code",
    "claude_code.commit.count": "commit_count",
    "claude_code.pull_request.count": "pull_request_count",
}

USER_PROMPT_EVENT = "claude_code.user_prompt"
API_REQUEST_EVENT = "claude_code.api_request"

EVENT_FIELDS: dict[str, str] = {
    USER_PROMPT_EVENT: "prompt_count",
    API_REQUEST_EVENT: "api_request_count",
}

TOKEN_TYPE_FALLBACKS = frozenset({"input", "output", "ignore"})


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; aware ones are returned unchanged."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def datetime_to_nanos(value: datetime) -> int:
    """Convert a datetime to nanoseconds since the epoch.

    Naive datetimes are taken as UTC. Exact to the microsecond.
    """
    value = ensure_aware(value)
    return ((value - EPOCH) // timedelta(microseconds=1)) * 1000


def nanos_to_datetime(nanos: int) -> datetime:
    """Convert nanoseconds since the epoch to an aware UTC datetime."""
    return EPOCH + timedelta(microseconds=nanos // 1000)


def truncate_to_hour(nanos: int) -> datetime:
    """Get the start of the UTC hour containing a nanosecond timestamp."""
    return nanos_to_datetime(nanos - nanos % NANOS_PER_HOUR)


@dataclass
class UsageCounters:
    """Numeric usage counters shared by summaries and hourly buckets.

    Every counter starts at zero and only grows while folding.

    Attributes:
        total_cost_usd: Reported cost in US dollars.
        input_tokens: Input tokens consumed.
        output_tokens: Output tokens produced.
        session_count: Sessions started.
        active_time_seconds: Active usage time.
        lines_of_code: Lines of code modified.
        commit_count: Commits created.
        pull_request_count: Pull requests created.
        prompt_count: User prompts submitted.
        api_request_count: API requests issued.
    """

    total_cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    session_count: int = 0
    active_time_seconds: int = 0
    lines_of_code: int = 0
    commit_count: int = 0
    pull_request_count: int = 0
    prompt_count: int = 0
    api_request_count: int = 0

    @property
    def total_tokens(self) -> int:
        """Input plus output tokens."""
        return self.input_tokens + self.output_tokens

    def is_empty(self) -> bool:
        """Check whether every counter is still zero."""
        return all(getattr(self, f.name) == 0 for f in fields(UsageCounters))

    def add(self, field_name: str, value: float) -> None:
        """Add a non-negative amount to one counter.

        Integer counters receive the truncated value. Negative and
        non-finite amounts are ignored so counters never decrease.

        Args:
            field_name: Name of the counter field.
            value: Amount to add.
        """
        if not math.isfinite(value) or value < 0:
            return
        if field_name == "total_cost_usd":
            self.total_cost_usd += value
        else:
            setattr(self, field_name, getattr(self, field_name) + int(value))

    def merge(self, other: UsageCounters) -> None:
        """Add every counter of another instance into this one."""
        for f in fields(UsageCounters):
            self.add(f.name, getattr(other, f.name))

    def counters_dict(self) -> dict[str, Any]:
        """Get just the counter fields as a dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(UsageCounters)}


@dataclass
class AggregatedSummary(UsageCounters):
    """Usage totals over one time window.

    Attributes:
        last_updated: Source modification time (file backend) or fold
            completion time (remote backend).
    """

    last_updated: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["total_tokens"] = self.total_tokens
        data["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return data


@dataclass
class HourlyBucket(UsageCounters):
    """Usage totals for one UTC hour.

    Attributes:
        hour_start: Start of the hour this bucket covers.
    """

    hour_start: datetime = field(kw_only=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = self.counters_dict()
        data["hour_start"] = self.hour_start.isoformat()
        data["total_tokens"] = self.total_tokens
        return data


class UsageAggregator:
    """Folds raw metric points and log events into usage counters.

    Unrecognized metric names and event names are ignored. Token usage
    points without a token_type attribute go to the configured fallback
    ("input" by default, matching what the tool historically reported).
    """

    def __init__(self, token_type_fallback: str = "input"):
        """Initialize the aggregator.

        Args:
            token_type_fallback: Where unlabeled token usage goes: "input",
                "output" or "ignore".

        Raises:
            ValueError: If the fallback is not one of the known values.
        """
        if token_type_fallback not in TOKEN_TYPE_FALLBACKS:
            raise ValueError(
                f"Invalid token_type fallback '{token_type_fallback}'. "
                f"Valid values are: {', '.join(sorted(TOKEN_TYPE_FALLBACKS))}"
            )
        self.token_type_fallback = token_type_fallback

    def fold(
        self,
        points: Iterable[RawMetricPoint],
        events: Iterable[RawLogEvent] = (),
        since: datetime | None = None,
    ) -> AggregatedSummary:
        """Fold points and events into a single summary.

        Args:
            points: Raw metric points.
            events: Raw log events.
            since: Lower time bound. Points stamped strictly before it are
                skipped; points without a timestamp are always included.

        Returns:
            A fresh AggregatedSummary. last_updated is left for the caller.
        """
        since_nanos = datetime_to_nanos(since) if since is not None else None
        summary = AggregatedSummary()
        unlabeled = 0

        for point in points:
            if not _in_window(point.timestamp_nanos, since_nanos):
                continue
            if not self._apply_point(summary, point):
                unlabeled += 1

        for event in events:
            if not _in_window(event.timestamp_nanos, since_nanos):
                continue
            _apply_event(summary, event)

        self._report_unlabeled(unlabeled)
        return summary

    def fold_hourly(
        self,
        points: Iterable[RawMetricPoint],
        events: Iterable[RawLogEvent] = (),
        since: datetime | None = None,
    ) -> list[HourlyBucket]:
        """Fold points and events into per-hour buckets.

        Buckets are created on first touch and only for hours that saw a
        recognized point or event. Anything without a timestamp cannot be
        bucketed and is left out.

        Args:
            points: Raw metric points.
            events: Raw log events.
            since: Lower time bound, as in fold().

        Returns:
            Buckets sorted ascending by hour_start.
        """
        since_nanos = datetime_to_nanos(since) if since is not None else None
        buckets: dict[int, HourlyBucket] = {}
        unlabeled = 0

        def bucket_for(nanos: int) -> HourlyBucket:
            key = nanos - nanos % NANOS_PER_HOUR
            if key not in buckets:
                buckets[key] = HourlyBucket(hour_start=nanos_to_datetime(key))
            return buckets[key]

        for point in points:
            if point.timestamp_nanos is None:
                continue
            if not _in_window(point.timestamp_nanos, since_nanos):
                continue
            if not self.recognizes_point(point):
                continue
            if not self._apply_point(bucket_for(point.timestamp_nanos), point):
                unlabeled += 1

        for event in events:
            if event.timestamp_nanos is None:
                continue
            if not _in_window(event.timestamp_nanos, since_nanos):
                continue
            if event.event_name not in EVENT_FIELDS:
                continue
            _apply_event(bucket_for(event.timestamp_nanos), event)

        self._report_unlabeled(unlabeled)
        return [buckets[key] for key in sorted(buckets)]

    def recognizes_point(self, point: RawMetricPoint) -> bool:
        """Check whether a point would touch any counter."""
        if point.metric_name in METRIC_FIELDS:
            return True
        if point.metric_name != TOKEN_METRIC:
            return False
        token_type = point.attribute(TOKEN_TYPE_ATTRIBUTE)
        if token_type is None:
            return self.token_type_fallback != "ignore"
        return token_type in ("input", "output")

    def _apply_point(self, counters: UsageCounters, point: RawMetricPoint) -> bool:
        """Route one point to its counter.

        Returns:
            False if the point was token usage without a token_type.
        """
        field_name = METRIC_FIELDS.get(point.metric_name)
        if field_name is not None:
            counters.add(field_name, point.value)
            return True

        if point.metric_name != TOKEN_METRIC:
            return True

        token_type = point.attribute(TOKEN_TYPE_ATTRIBUTE)
        if token_type is None:
            if self.token_type_fallback != "ignore":
                counters.add(f"{self.token_type_fallback}_tokens", point.value)
            return False

        if token_type == "input":
            counters.add("input_tokens", point.value)
        elif token_type == "output":
            counters.add("output_tokens", point.value)
        return True

    def _report_unlabeled(self, count: int) -> None:
        if count:
            logger.warning(
                "%d token usage point(s) had no %s attribute; treated as %s",
                count,
                TOKEN_TYPE_ATTRIBUTE,
                self.token_type_fallback,
            )


def _in_window(timestamp_nanos: int | None, since_nanos: int | None) -> bool:
    if since_nanos is None or timestamp_nanos is None:
        return True
    return timestamp_nanos >= since_nanos


def _apply_event(counters: UsageCounters, event: RawLogEvent) -> None:
    field_name = EVENT_FIELDS.get(event.event_name or "")
    if field_name is not None:
        counters.add(field_name, 1)


def fold_summary(
    points: Iterable[RawMetricPoint],
    events: Iterable[RawLogEvent] = (),
    since: datetime | None = None,
    token_type_fallback: str = "input",
) -> AggregatedSummary:
    """Convenience function to fold into a summary with a fresh aggregator."""
    return UsageAggregator(token_type_fallback).fold(points, events, since)
