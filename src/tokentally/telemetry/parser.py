"""OTLP JSON payload decoding.

The collector's file exporter writes either one JSON document per file or
one document per line. Both framings are accepted here; anything that does
not decode is dropped so that one corrupt line cannot hide the rest of the
file.

Usage:
    from tokentally.telemetry import parser

    documents = parser.read_payload_file(path, parser.METRICS_ROOT)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, TypedDict

logger = logging.getLogger(__name__)

METRICS_ROOT = "resourceMetrics"
LOGS_ROOT = "resourceLogs"


class AnyValue(TypedDict, total=False):
    stringValue: str
    intValue: str | int
    doubleValue: float
    boolValue: bool


class KeyValue(TypedDict):
    key: str
    value: AnyValue


class NumberDataPoint(TypedDict, total=False):
    attributes: list[KeyValue]
    startTimeUnixNano: str | int
    timeUnixNano: str | int
    asInt: str | int
    asDouble: float


class MetricData(TypedDict, total=False):
    dataPoints: list[NumberDataPoint]
    aggregationTemporality: int
    isMonotonic: bool


class Metric(TypedDict, total=False):
    name: str
    description: str
    unit: str
    sum: MetricData
    gauge: MetricData


class ScopeMetrics(TypedDict, total=False):
    scope: dict[str, Any]
    metrics: list[Metric]


class ResourceMetrics(TypedDict, total=False):
    resource: dict[str, Any]
    scopeMetrics: list[ScopeMetrics]


class MetricsDocument(TypedDict, total=False):
    resourceMetrics: list[ResourceMetrics]


class LogRecord(TypedDict, total=False):
    timeUnixNano: str | int
    observedTimeUnixNano: str | int
    severityNumber: int
    severityText: str
    body: AnyValue
    attributes: list[KeyValue]


class ScopeLogs(TypedDict, total=False):
    scope: dict[str, Any]
    logRecords: list[LogRecord]


class ResourceLogs(TypedDict, total=False):
    resource: dict[str, Any]
    scopeLogs: list[ScopeLogs]


class LogsDocument(TypedDict, total=False):
    resourceLogs: list[ResourceLogs]


# Shapes use the lowerCamelCase names; the proto snake_case spellings are
# accepted too and resolved by the extractors.
OtlpDocument = MetricsDocument | LogsDocument


def decode_payload(data: bytes | str, root_key: str = METRICS_ROOT) -> list[OtlpDocument]:
    """Decode a telemetry payload into its JSON documents.

    Tries the whole buffer as a single document first. If that fails, the
    buffer is treated as newline-delimited JSON and each non-blank line is
    decoded on its own.

    Args:
        data: Raw payload bytes or text.
        root_key: Top-level key of the expected export schema. Only used
            for diagnostics; documents without it are kept (they simply
            carry no records).

    Returns:
        Decoded documents in document/line order. Lines that do not decode
        to a JSON object are skipped.
    """
    if isinstance(data, bytes):
        text = data.decode("utf-8", errors="replace")
    else:
        text = data

    if not text.strip():
        return []

    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        pass
    else:
        if isinstance(document, dict):
            return [document]

    documents: list[OtlpDocument] = []
    skipped = 0
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue

        try:
            document = json.loads(line)
        except json.JSONDecodeError:
            skipped += 1
            continue

        if not isinstance(document, dict):
            skipped += 1
            continue

        documents.append(document)

    if skipped:
        logger.debug("Skipped %d undecodable %s line(s)", skipped, root_key)

    return documents


def read_payload_file(path: Path, root_key: str = METRICS_ROOT) -> list[OtlpDocument]:
    """Read and decode a telemetry export file.

    A missing file is the normal state before any telemetry has been
    exported and yields no documents.

    Args:
        path: Path to the export file.
        root_key: Top-level key of the expected export schema.

    Returns:
        Decoded documents, or an empty list if the file is absent or
        unreadable.
    """
    path = Path(path)
    if not path.exists():
        return []

    try:
        data = path.read_bytes()
    except OSError as e:
        logger.warning("Could not read telemetry file %s: %s", path, e)
        return []

    return decode_payload(data, root_key)
