"""Telemetry ingestion and aggregation for tokentally.

This package turns Claude Code's OTLP exports into usage summaries.

Architecture:
    OpenTelemetry collector
            | file exporter             | prometheus exporter
            v                           v
    metrics.json / logs.json       Prometheus server
            |                           |
            v                           |
    parser (documents)                  |
            |                           |
            v                           |
    extractors (points, events)         |
            |                           |
            v                           v
    aggregator (fold)             prometheus client
            |                           |
            +------------+--------------+
                         v
                backends (SummaryBackend)
                         |
                         v
         AggregatedSummary / HourlyBucket
"""

from tokentally.telemetry.parser import decode_payload, read_payload_file
from tokentally.telemetry.extractors import (
    RawLogEvent,
    RawMetricPoint,
    extract_all_events,
    extract_all_points,
)
from tokentally.telemetry.aggregator import (
    AggregatedSummary,
    HourlyBucket,
    UsageAggregator,
    fold_summary,
)
from tokentally.telemetry.pricing import PriceTable, TokenPrice
from tokentally.telemetry.prometheus import PrometheusClient, PromSample
from tokentally.telemetry.backends import (
    FileBackend,
    PrometheusBackend,
    SummaryBackend,
    create_backend,
)

__all__ = [
    # Parsing
    "decode_payload",
    "read_payload_file",
    "RawMetricPoint",
    "RawLogEvent",
    "extract_all_points",
    "extract_all_events",
    # Aggregation
    "AggregatedSummary",
    "HourlyBucket",
    "UsageAggregator",
    "fold_summary",
    "PriceTable",
    "TokenPrice",
    # Backends
    "PrometheusClient",
    "PromSample",
    "SummaryBackend",
    "FileBackend",
    "PrometheusBackend",
    "create_backend",
]
