"""Client for a Prometheus-compatible HTTP query API."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from tokentally.errors import BackendConnectionError, BackendQueryError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


def _to_float(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass
class PromSample:
    """One series from a query result.

    Attributes:
        metric: Series labels.
        value: [timestamp, value] pair of an instant vector.
        values: [[timestamp, value], ...] pairs of a range matrix.
    """

    metric: dict[str, str] = field(default_factory=dict)
    value: list[Any] | None = None
    values: list[list[Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PromSample:
        """Create a PromSample from a result entry."""
        metric = data.get("metric") or {}
        value = data.get("value")
        values = data.get("values") or []
        return cls(
            metric={str(k): str(v) for k, v in metric.items()},
            value=value if isinstance(value, list) else None,
            values=[pair for pair in values if isinstance(pair, list)],
        )

    def sample_value(self) -> float:
        """Get the last value of the sample as float.

        Returns:
            The value, or 0.0 if missing or not a finite number.
        """
        pair = self.value
        if pair is None and self.values:
            pair = self.values[-1]
        if not pair or len(pair) < 2:
            return 0.0
        number = _to_float(pair[-1])
        return number if number is not None else 0.0

    def points(self) -> list[tuple[float, float]]:
        """Get the (timestamp, value) pairs of a range result."""
        result = []
        for pair in self.values:
            if len(pair) < 2:
                continue
            timestamp = _to_float(pair[0])
            number = _to_float(pair[1])
            if timestamp is None or number is None:
                continue
            result.append((timestamp, number))
        return result


class PrometheusClient:
    """Thin client for the Prometheus HTTP API.

    Transport failures become BackendConnectionError; error envelopes and
    HTTP error statuses become BackendQueryError.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 0,
    ):
        """Initialize the client.

        Args:
            base_url: Server URL, e.g. http://localhost:9090.
            timeout: Per-request timeout in seconds.
            max_retries: Retries for idempotent requests on 5xx responses.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self._setup_http_client()

    @classmethod
    def from_host(cls, host: str, port: int, **kwargs: Any) -> PrometheusClient:
        """Create a client for http://host:port."""
        return cls(f"http://{host}:{port}", **kwargs)

    def _setup_http_client(self) -> None:
        """Setup HTTP session with retry logic."""
        self.session = requests.Session()

        retry_strategy = Retry(
            total=self.max_retries,
            status_forcelist=[502, 503, 504],
            backoff_factor=0.2,
            allowed_methods=["GET"],
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self.session.headers.update({"Accept": "application/json"})

    def _url(self, endpoint: str) -> str:
        return urljoin(self.base_url + "/", endpoint.lstrip("/"))

    def check_connection(self) -> bool:
        """Probe the health endpoint.

        Returns:
            True if the server answered 200 within the timeout.
        """
        try:
            response = self.session.get(self._url("/-/healthy"), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.debug("Health probe to %s failed: %s", self.base_url, e)
            return False
        return response.status_code == 200

    def query(self, promql: str, at: datetime | None = None) -> list[PromSample]:
        """Run an instant query.

        Args:
            promql: The PromQL expression.
            at: Evaluation time. Defaults to the server's now.

        Returns:
            Result series.
        """
        params: dict[str, Any] = {"query": promql}
        if at is not None:
            params["time"] = f"{at.timestamp():.3f}"
        return self._get_result("/api/v1/query", promql, params)

    def query_range(
        self,
        promql: str,
        start: datetime,
        end: datetime,
        step_seconds: int,
    ) -> list[PromSample]:
        """Run a range query.

        Args:
            promql: The PromQL expression.
            start: Range start.
            end: Range end.
            step_seconds: Resolution step in seconds.

        Returns:
            Result series with their values lists filled.
        """
        params = {
            "query": promql,
            "start": f"{start.timestamp():.3f}",
            "end": f"{end.timestamp():.3f}",
            "step": f"{int(step_seconds)}s",
        }
        return self._get_result("/api/v1/query_range", promql, params)

    def _get_result(
        self, endpoint: str, promql: str, params: dict[str, Any]
    ) -> list[PromSample]:
        """Issue a query request and unwrap the response envelope."""
        try:
            response = self.session.get(self._url(endpoint), params=params, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise BackendConnectionError(self.base_url, f"request timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError as e:
            raise BackendConnectionError(self.base_url, str(e))
        except requests.exceptions.RequestException as e:
            raise BackendConnectionError(self.base_url, f"request failed: {e}")

        try:
            payload = response.json()
        except ValueError:
            raise BackendQueryError(
                promql, f"HTTP {response.status_code}: response is not JSON"
            )

        if not isinstance(payload, dict):
            raise BackendQueryError(promql, "unexpected response envelope")

        if payload.get("status") != "success":
            error_type = payload.get("errorType") or f"HTTP {response.status_code}"
            error = payload.get("error") or "Unknown error"
            raise BackendQueryError(promql, f"{error_type}: {error}")

        data = payload.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("result"), list):
            raise BackendQueryError(promql, "response has no result data")

        return [
            PromSample.from_dict(entry)
            for entry in data["result"]
            if isinstance(entry, dict)
        ]

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()
