"""Tests for the Prometheus HTTP API client."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from tokentally.errors import BackendConnectionError, BackendQueryError
from tokentally.telemetry.prometheus import PromSample, PrometheusClient

NOW = datetime(2025, 1, 8, 12, 0, tzinfo=timezone.utc)


def make_response(payload=None, status_code: int = 200, json_error: bool = False) -> MagicMock:
    """Create a mock requests response."""
    response = MagicMock()
    response.status_code = status_code
    if json_error:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = payload
    return response


def success(result: list, result_type: str = "vector") -> dict:
    """Create a success envelope."""
    return {"status": "success", "data": {"resultType": result_type, "result": result}}


@pytest.fixture
def client() -> PrometheusClient:
    client = PrometheusClient("http://localhost:9090/", timeout=2.0)
    client.session = MagicMock()
    return client


class TestPromSample:
    """Tests for PromSample."""

    def test_instant_value(self):
        """Test reading an instant vector value."""
        sample = PromSample.from_dict(
            {"metric": {"type": "input"}, "value": [1736337600, "123.5"]}
        )

        assert sample.metric == {"type": "input"}
        assert sample.sample_value() == 123.5

    def test_range_last_value(self):
        """Test that a matrix sample reports its last value."""
        sample = PromSample.from_dict(
            {"metric": {}, "values": [[1736334000, "1"], [1736337600, "4"]]}
        )

        assert sample.sample_value() == 4.0
        assert sample.points() == [(1736334000.0, 1.0), (1736337600.0, 4.0)]

    def test_garbage_values(self):
        """Test NaN, missing and malformed values read as zero."""
        assert PromSample.from_dict({"value": [1, "NaN"]}).sample_value() == 0.0
        assert PromSample.from_dict({"value": [1]}).sample_value() == 0.0
        assert PromSample.from_dict({}).sample_value() == 0.0
        assert PromSample.from_dict({"value": "oops"}).sample_value() == 0.0

    def test_points_skip_bad_pairs(self):
        """Test that malformed range pairs are dropped."""
        sample = PromSample.from_dict(
            {"values": [[1, "2"], [2], [3, "x"], "bad", [4, "+Inf"], [5, "6"]]}
        )

        assert sample.points() == [(1.0, 2.0), (5.0, 6.0)]


class TestConnection:
    """Tests for PrometheusClient.check_connection()."""

    def test_healthy(self, client):
        """Test a 200 health probe."""
        client.session.get.return_value = make_response(status_code=200)

        assert client.check_connection() is True
        url = client.session.get.call_args[0][0]
        assert url == "http://localhost:9090/-/healthy"
        assert client.session.get.call_args[1]["timeout"] == 2.0

    def test_unhealthy_status(self, client):
        """Test a non-200 health probe."""
        client.session.get.return_value = make_response(status_code=503)

        assert client.check_connection() is False

    def test_transport_failure(self, client):
        """Test a refused connection."""
        client.session.get.side_effect = requests.exceptions.ConnectionError("refused")

        assert client.check_connection() is False

    def test_from_host(self):
        """Test building the base URL from host and port."""
        client = PrometheusClient.from_host("prom.internal", 9091, timeout=1.0)

        assert client.base_url == "http://prom.internal:9091"
        assert client.timeout == 1.0
        client.close()


class TestQuery:
    """Tests for instant and range queries."""

    def test_instant_query(self, client):
        """Test query parameters and result unwrapping."""
        client.session.get.return_value = make_response(
            success([{"metric": {"model": "claude-sonnet-4"}, "value": [1736337600, "7"]}])
        )

        samples = client.query("sum(up)", at=NOW)

        args, kwargs = client.session.get.call_args
        assert args[0] == "http://localhost:9090/api/v1/query"
        assert kwargs["params"] == {"query": "sum(up)", "time": f"{NOW.timestamp():.3f}"}
        assert len(samples) == 1
        assert samples[0].metric["model"] == "claude-sonnet-4"
        assert samples[0].sample_value() == 7.0

    def test_instant_query_without_time(self, client):
        """Test that time is omitted when not given."""
        client.session.get.return_value = make_response(success([]))

        assert client.query("up") == []
        assert "time" not in client.session.get.call_args[1]["params"]

    def test_range_query(self, client):
        """Test range query parameters."""
        client.session.get.return_value = make_response(
            success([{"metric": {}, "values": [[1736337600, "2"]]}], result_type="matrix")
        )
        start = datetime(2025, 1, 7, 12, 0, tzinfo=timezone.utc)

        samples = client.query_range("sum(x)", start, NOW, 3600)

        args, kwargs = client.session.get.call_args
        assert args[0] == "http://localhost:9090/api/v1/query_range"
        assert kwargs["params"]["step"] == "3600s"
        assert kwargs["params"]["start"] == f"{start.timestamp():.3f}"
        assert kwargs["params"]["end"] == f"{NOW.timestamp():.3f}"
        assert samples[0].points() == [(1736337600.0, 2.0)]

    def test_non_dict_entries_skipped(self, client):
        """Test that junk result entries are ignored."""
        client.session.get.return_value = make_response(success(["junk", {"value": [1, "3"]}]))

        samples = client.query("x")

        assert [s.sample_value() for s in samples] == [3.0]


class TestQueryErrors:
    """Tests for error mapping."""

    def test_timeout(self, client):
        """Test that timeouts are connectivity failures."""
        client.session.get.side_effect = requests.exceptions.Timeout()

        with pytest.raises(BackendConnectionError, match="timed out"):
            client.query("up")

    def test_connection_error(self, client):
        """Test that refused connections are connectivity failures."""
        client.session.get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(BackendConnectionError, match="Cannot connect to http://localhost:9090"):
            client.query("up")

    def test_error_envelope(self, client):
        """Test that an error envelope raises BackendQueryError."""
        client.session.get.return_value = make_response(
            {"status": "error", "errorType": "bad_data", "error": "parse error"},
            status_code=400,
        )

        with pytest.raises(BackendQueryError, match="bad_data: parse error"):
            client.query("sum(")

    def test_not_json(self, client):
        """Test a non-JSON response body."""
        client.session.get.return_value = make_response(status_code=502, json_error=True)

        with pytest.raises(BackendQueryError, match="HTTP 502"):
            client.query("up")

    def test_missing_result(self, client):
        """Test a success envelope without a result list."""
        client.session.get.return_value = make_response({"status": "success", "data": {}})

        with pytest.raises(BackendQueryError, match="no result data"):
            client.query("up")

    def test_non_object_envelope(self, client):
        """Test a JSON body that is not an object."""
        client.session.get.return_value = make_response([1, 2])

        with pytest.raises(BackendQueryError, match="unexpected response envelope"):
            client.query("up")
