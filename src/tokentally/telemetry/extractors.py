"""Flattening of decoded OTLP documents into raw points and events.

Metrics are walked resource -> scope -> metric -> data point, logs are
walked resource -> scope -> log record. Each data point becomes a
RawMetricPoint and each log record a RawLogEvent. Nodes with the wrong
JSON shape are skipped one at a time; nothing here raises on bad input.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping

from tokentally.telemetry.parser import (
    LogRecord,
    LogsDocument,
    Metric,
    MetricsDocument,
    NumberDataPoint,
)


@dataclass(frozen=True)
class RawMetricPoint:
    """One numeric observation of a named metric.

    Attributes:
        metric_name: OTLP metric name (e.g. claude_code.cost.usage).
        attributes: Data point attributes flattened to strings.
        timestamp_nanos: timeUnixNano, or None if the point has none.
        value: asDouble or asInt normalized to float.
    """

    metric_name: str
    attributes: dict[str, str] = field(default_factory=dict)
    timestamp_nanos: int | None = None
    value: float = 0.0

    def attribute(self, key: str) -> str | None:
        """Get an attribute value, None meaning "no opinion"."""
        return self.attributes.get(key)


@dataclass(frozen=True)
class RawLogEvent:
    """One log record reduced to its event identity and time.

    Attributes:
        event_name: Body string, else the event.name attribute.
        timestamp_nanos: timeUnixNano, else observedTimeUnixNano.
        attributes: Log record attributes flattened to strings.
    """

    event_name: str | None
    timestamp_nanos: int | None = None
    attributes: dict[str, str] = field(default_factory=dict)


# OTLP JSON uses lowerCamelCase; protobuf JSON parsers also emit the
# proto snake_case field names.
_FIELD_ALIASES: dict[str, str] = {
    "resourceMetrics": "resource_metrics",
    "scopeMetrics": "scope_metrics",
    "dataPoints": "data_points",
    "timeUnixNano": "time_unix_nano",
    "observedTimeUnixNano": "observed_time_unix_nano",
    "asInt": "as_int",
    "asDouble": "as_double",
    "resourceLogs": "resource_logs",
    "scopeLogs": "scope_logs",
    "logRecords": "log_records",
    "stringValue": "string_value",
    "intValue": "int_value",
    "doubleValue": "double_value",
    "boolValue": "bool_value",
}


def _get(node: Mapping[str, Any], name: str) -> Any:
    value = node.get(name)
    if value is None and name in _FIELD_ALIASES:
        value = node.get(_FIELD_ALIASES[name])
    return value


def _children(node: Any, name: str) -> Iterator[dict[str, Any]]:
    """Yield the dict items of a list-valued field, skipping anything else."""
    if not isinstance(node, dict):
        return
    items = _get(node, name)
    if not isinstance(items, list):
        return
    for item in items:
        if isinstance(item, dict):
            yield item


def parse_int64(value: Any) -> int | None:
    """Parse an OTLP int64 field, which JSON encodes as string or number.

    Args:
        value: The raw field value.

    Returns:
        The integer, or None if absent or unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            try:
                return int(float(value))
            except (ValueError, OverflowError):
                return None
    return None


def _parse_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def attribute_value_to_str(value: Any) -> str | None:
    """Flatten an OTLP AnyValue into a string.

    Args:
        value: An AnyValue dict such as {"stringValue": "input"}.

    Returns:
        The string form, or None for unsupported value kinds.
    """
    if not isinstance(value, dict):
        return None

    string_value = _get(value, "stringValue")
    if isinstance(string_value, str):
        return string_value

    int_value = parse_int64(_get(value, "intValue"))
    if int_value is not None:
        return str(int_value)

    double_value = _get(value, "doubleValue")
    if isinstance(double_value, (int, float)) and not isinstance(double_value, bool):
        return str(double_value)

    bool_value = _get(value, "boolValue")
    if isinstance(bool_value, bool):
        return "true" if bool_value else "false"

    return None


def extract_attributes(node: Mapping[str, Any]) -> dict[str, str]:
    """Build a string-keyed lookup from a node's attributes list.

    Args:
        node: A data point or log record.

    Returns:
        Mapping of attribute key to string value. Later duplicates win.
    """
    result: dict[str, str] = {}
    for attribute in _children(node, "attributes"):
        key = attribute.get("key")
        if not isinstance(key, str):
            continue
        value = attribute_value_to_str(attribute.get("value"))
        if value is not None:
            result[key] = value
    return result


def data_point_value(data_point: NumberDataPoint) -> float:
    """Normalize a data point's value to float, preferring asDouble.

    Args:
        data_point: An OTLP NumberDataPoint.

    Returns:
        The value, or 0.0 when neither field is usable.
    """
    as_double = _parse_float(_get(data_point, "asDouble"))
    if as_double is not None:
        return as_double

    as_int = parse_int64(_get(data_point, "asInt"))
    if as_int is not None:
        return float(as_int)

    return 0.0


def _metric_data_points(metric: Metric) -> Iterator[NumberDataPoint]:
    # sum and gauge are treated alike; gauge is read only when sum has no points.
    for kind in ("sum", "gauge"):
        data_points = list(_children(metric.get(kind), "dataPoints"))
        if data_points:
            yield from data_points
            return


def extract_metric_points(document: MetricsDocument) -> Iterator[RawMetricPoint]:
    """Yield every data point of a decoded metrics document.

    Args:
        document: A decoded OTLP metrics export document.

    Yields:
        RawMetricPoint for each data point, in document order.
    """
    for resource_metrics in _children(document, "resourceMetrics"):
        for scope_metrics in _children(resource_metrics, "scopeMetrics"):
            for metric in _children(scope_metrics, "metrics"):
                name = metric.get("name")
                if not isinstance(name, str):
                    continue
                for data_point in _metric_data_points(metric):
                    yield RawMetricPoint(
                        metric_name=name,
                        attributes=extract_attributes(data_point),
                        timestamp_nanos=parse_int64(_get(data_point, "timeUnixNano")),
                        value=data_point_value(data_point),
                    )


def log_event_name(log_record: LogRecord, attributes: dict[str, str]) -> str | None:
    """Get the event identity of a log record.

    Args:
        log_record: An OTLP LogRecord.
        attributes: The record's flattened attributes.

    Returns:
        The body string value if present, else the event.name attribute.
    """
    body = log_record.get("body")
    if isinstance(body, dict):
        body_value = _get(body, "stringValue")
        if isinstance(body_value, str):
            return body_value
    return attributes.get("event.name")


def extract_log_events(document: LogsDocument) -> Iterator[RawLogEvent]:
    """Yield every log record of a decoded logs document.

    Args:
        document: A decoded OTLP logs export document.

    Yields:
        RawLogEvent for each log record, in document order.
    """
    for resource_logs in _children(document, "resourceLogs"):
        for scope_logs in _children(resource_logs, "scopeLogs"):
            for log_record in _children(scope_logs, "logRecords"):
                attributes = extract_attributes(log_record)
                # A zero timeUnixNano means "unset" in OTLP.
                timestamp = parse_int64(_get(log_record, "timeUnixNano")) or parse_int64(
                    _get(log_record, "observedTimeUnixNano")
                )
                yield RawLogEvent(
                    event_name=log_event_name(log_record, attributes),
                    timestamp_nanos=timestamp,
                    attributes=attributes,
                )


def extract_all_points(documents: Iterable[MetricsDocument]) -> list[RawMetricPoint]:
    """Flatten several metrics documents into one list of points."""
    return [point for document in documents for point in extract_metric_points(document)]


def extract_all_events(documents: Iterable[LogsDocument]) -> list[RawLogEvent]:
    """Flatten several logs documents into one list of events."""
    return [event for document in documents for event in extract_log_events(document)]
