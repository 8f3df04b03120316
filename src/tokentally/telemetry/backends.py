"""Query backends producing usage summaries for a time window.

Two interchangeable implementations sit behind SummaryBackend:

- FileBackend reads the collector's metrics and logs export files and
  folds them locally.
- PrometheusBackend asks a Prometheus-compatible server for counter
  increases over the window.

Callers pick one with create_backend() and never branch on the kind.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol

from tokentally.errors import BackendConnectionError
from tokentally.telemetry import parser
from tokentally.telemetry.aggregator import (
    NANOS_PER_SECOND,
    AggregatedSummary,
    HourlyBucket,
    UsageAggregator,
    UsageCounters,
    ensure_aware,
    truncate_to_hour,
)
from tokentally.telemetry.extractors import extract_all_events, extract_all_points
from tokentally.telemetry.pricing import DEFAULT_PRICE, PriceTable, TokenPrice
from tokentally.telemetry.prometheus import PromSample, PrometheusClient

if TYPE_CHECKING:
    from tokentally.config import Config

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600


class SummaryBackend(Protocol):
    """Source of usage summaries for a window.

    Naive datetimes are taken as UTC. Callers issuing several fetches in
    one pass call ensure_connected() once and pass probe=False.
    """

    def ensure_connected(self) -> None:
        """Raise BackendConnectionError if the source is unreachable."""
        ...

    def fetch_summary(
        self, window_start: datetime, now: datetime | None = None, probe: bool = True
    ) -> AggregatedSummary:
        """Summarize usage from window_start up to now."""
        ...

    def fetch_hourly(
        self, hours: int = 24, now: datetime | None = None, probe: bool = True
    ) -> list[HourlyBucket]:
        """Summarize usage per hour over the last `hours` hours."""
        ...

    def close(self) -> None:
        """Release any held connections."""
        ...


class FileBackend:
    """Summaries folded from local OTLP export files.

    Missing files read as no telemetry; the summary is then all zero.
    """

    def __init__(
        self,
        metrics_path: Path,
        logs_path: Path,
        aggregator: UsageAggregator | None = None,
    ):
        """Initialize the backend.

        Args:
            metrics_path: Path to the metrics export file.
            logs_path: Path to the logs export file.
            aggregator: Aggregator to fold with. Defaults to a fresh one.
        """
        self.metrics_path = Path(metrics_path).expanduser()
        self.logs_path = Path(logs_path).expanduser()
        self.aggregator = aggregator or UsageAggregator()

    def ensure_connected(self) -> None:
        # Missing files are no telemetry, not an outage.
        pass

    def fetch_summary(
        self, window_start: datetime, now: datetime | None = None, probe: bool = True
    ) -> AggregatedSummary:
        points, events = self._read()
        summary = self.aggregator.fold(points, events, since=ensure_aware(window_start))
        summary.last_updated = self.last_modified()
        return summary

    def fetch_hourly(
        self, hours: int = 24, now: datetime | None = None, probe: bool = True
    ) -> list[HourlyBucket]:
        now = ensure_aware(now or datetime.now(timezone.utc))
        points, events = self._read()
        return self.aggregator.fold_hourly(points, events, since=now - timedelta(hours=hours))

    def close(self) -> None:
        pass

    def last_modified(self) -> datetime | None:
        """Modification time of the metrics file, else of the logs file."""
        for path in (self.metrics_path, self.logs_path):
            try:
                return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            except OSError:
                continue
        return None

    def _read(self):
        metrics_documents = parser.read_payload_file(self.metrics_path, parser.METRICS_ROOT)
        logs_documents = parser.read_payload_file(self.logs_path, parser.LOGS_ROOT)
        return extract_all_points(metrics_documents), extract_all_events(logs_documents)


@dataclass(frozen=True)
class PrometheusMetricNames:
    """Exported counter names as they appear in Prometheus.

    The collector's Prometheus exporter appends units and _total to the
    OTLP names.
    """

    cost: str = "claude_code_cost_usage_USD_total"
    tokens: str = "claude_code_token_usage_tokens_total"
    sessions: str = "claude_code_session_count_total"
    active_time: str = "claude_code_active_time_seconds_total"
    api_requests: str = "claude_code_api_requests_total"


# Token series are labelled "type" by the exporter, "token_type" by
# some pipelines; whichever is present wins.
TOKEN_TYPE_LABELS = ("type", "token_type")


def _token_type(sample: PromSample) -> str | None:
    for label in TOKEN_TYPE_LABELS:
        value = sample.metric.get(label)
        if value:
            return value
    return None


def _total(samples: list[PromSample]) -> float:
    return sum(sample.sample_value() for sample in samples)


class PrometheusBackend:
    """Summaries from counter increases on a Prometheus-compatible server.

    Each fetch probes the health endpoint first unless probe=False, then
    issues one query per metric family concurrently. Any failed query
    fails the whole pass.
    """

    def __init__(
        self,
        client: PrometheusClient,
        metric_names: PrometheusMetricNames | None = None,
        prices: PriceTable | None = None,
        max_workers: int = 5,
    ):
        """Initialize the backend.

        Args:
            client: Prometheus API client.
            metric_names: Counter names to query.
            prices: Price table for deriving cost from tokens.
            max_workers: Size of the query fan-out pool.
        """
        self.client = client
        self.metric_names = metric_names or PrometheusMetricNames()
        self.prices = prices or PriceTable()
        self.max_workers = max_workers

    def fetch_summary(
        self, window_start: datetime, now: datetime | None = None, probe: bool = True
    ) -> AggregatedSummary:
        now = ensure_aware(now or datetime.now(timezone.utc))
        window_start = ensure_aware(window_start)
        if probe:
            self.ensure_connected()

        window_seconds = int((now - window_start).total_seconds())
        if window_seconds < 1:
            return AggregatedSummary(last_updated=datetime.now(timezone.utc))

        names = self.metric_names
        window = f"{window_seconds}s"
        queries = {
            "cost": f"sum(increase({names.cost}[{window}]))",
            "tokens": (
                f"sum by (type, token_type, model) (increase({names.tokens}[{window}]))"
            ),
            "sessions": f"sum(increase({names.sessions}[{window}]))",
            "active_time": f"sum(increase({names.active_time}[{window}]))",
            "api_requests": f"sum(increase({names.api_requests}[{window}]))",
        }
        results = self._fan_out(
            {key: (lambda q=query: self.client.query(q, at=now)) for key, query in queries.items()}
        )

        summary = AggregatedSummary()
        self._apply_tokens(summary, results["tokens"])
        summary.add("session_count", _total(results["sessions"]))
        summary.add("active_time_seconds", _total(results["active_time"]))
        summary.add("api_request_count", _total(results["api_requests"]))

        if results["cost"]:
            summary.add("total_cost_usd", _total(results["cost"]))
        else:
            summary.add("total_cost_usd", self._derived_cost(results["tokens"]))

        summary.last_updated = datetime.now(timezone.utc)
        return summary

    def fetch_hourly(
        self, hours: int = 24, now: datetime | None = None, probe: bool = True
    ) -> list[HourlyBucket]:
        now = ensure_aware(now or datetime.now(timezone.utc))
        if probe:
            self.ensure_connected()

        start = now - timedelta(hours=hours)
        names = self.metric_names
        queries = {
            "cost": f"sum(increase({names.cost}[1h]))",
            "tokens": f"sum by (type, token_type, model) (increase({names.tokens}[1h]))",
            "sessions": f"sum(increase({names.sessions}[1h]))",
            "active_time": f"sum(increase({names.active_time}[1h]))",
            "api_requests": f"sum(increase({names.api_requests}[1h]))",
        }
        results = self._fan_out(
            {
                key: (lambda q=query: self.client.query_range(q, start, now, HOUR_SECONDS))
                for key, query in queries.items()
            }
        )

        buckets: dict[datetime, HourlyBucket] = {}
        derived_cost: dict[datetime, float] = {}

        def bucket_for(timestamp: float) -> HourlyBucket:
            hour = truncate_to_hour(int(timestamp) * NANOS_PER_SECOND)
            if hour not in buckets:
                buckets[hour] = HourlyBucket(hour_start=hour)
            return buckets[hour]

        for sample in results["tokens"]:
            token_type = _token_type(sample)
            model = sample.metric.get("model")
            for timestamp, value in sample.points():
                if value <= 0:
                    continue
                bucket = bucket_for(timestamp)
                if token_type == "input":
                    bucket.add("input_tokens", value)
                elif token_type == "output":
                    bucket.add("output_tokens", value)
                cost = self.prices.cost_of(model, token_type or "", value)
                derived_cost[bucket.hour_start] = derived_cost.get(bucket.hour_start, 0.0) + cost

        for key, field_name in (
            ("sessions", "session_count"),
            ("active_time", "active_time_seconds"),
            ("api_requests", "api_request_count"),
            ("cost", "total_cost_usd"),
        ):
            for sample in results[key]:
                for timestamp, value in sample.points():
                    if value > 0:
                        bucket_for(timestamp).add(field_name, value)

        if not results["cost"]:
            for hour, cost in derived_cost.items():
                buckets[hour].add("total_cost_usd", cost)

        return [buckets[hour] for hour in sorted(buckets)]

    def ensure_connected(self) -> None:
        """Probe the health endpoint.

        Raises:
            BackendConnectionError: If the server is unhealthy or unreachable.
        """
        if not self.client.check_connection():
            raise BackendConnectionError(self.client.base_url, "health check failed")

    def close(self) -> None:
        self.client.close()

    def _fan_out(
        self, calls: dict[str, Callable[[], list[PromSample]]]
    ) -> dict[str, list[PromSample]]:
        """Run independent queries concurrently and join them.

        Raises:
            BackendError: The first failure; outstanding queries are
                cancelled.
        """
        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            futures = {executor.submit(call): key for key, call in calls.items()}
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            for future in done:
                error = future.exception()
                if error is not None:
                    raise error
            return {key: future.result() for future, key in futures.items()}
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _apply_tokens(self, counters: UsageCounters, samples: list[PromSample]) -> None:
        for sample in samples:
            token_type = _token_type(sample)
            if token_type == "input":
                counters.add("input_tokens", sample.sample_value())
            elif token_type == "output":
                counters.add("output_tokens", sample.sample_value())

    def _derived_cost(self, samples: list[PromSample]) -> float:
        cost = 0.0
        for sample in samples:
            token_type = _token_type(sample)
            if token_type is None:
                continue
            cost += self.prices.cost_of(sample.metric.get("model"), token_type, sample.sample_value())
        return cost


def create_backend(config: Config) -> SummaryBackend:
    """Build the backend selected by configuration.

    Args:
        config: The tokentally configuration.

    Returns:
        A FileBackend or PrometheusBackend.
    """
    aggregator = UsageAggregator(config.aggregation.token_type_fallback)
    backend_config = config.backend

    if backend_config.kind == "prometheus":
        client = PrometheusClient.from_host(
            backend_config.host,
            backend_config.port,
            timeout=backend_config.timeout,
            max_retries=backend_config.max_retries,
        )
        default_price = TokenPrice(
            input=config.pricing.input_per_million,
            output=config.pricing.output_per_million,
            cache_write=DEFAULT_PRICE.cache_write,
            cache_read=DEFAULT_PRICE.cache_read,
        )
        return PrometheusBackend(client, prices=PriceTable(default=default_price))

    return FileBackend(
        metrics_path=Path(backend_config.metrics_path),
        logs_path=Path(backend_config.logs_path),
        aggregator=aggregator,
    )
