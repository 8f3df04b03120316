"""Configuration parsing for tokentally.

Parses .tokentally/config.toml files for refresh, session window, weekly
period, backend and pricing settings.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

VALID_BACKENDS = frozenset({"file", "prometheus"})
VALID_TOKEN_TYPE_FALLBACKS = frozenset({"input", "output", "ignore"})

DEFAULT_DATA_DIR = "~/.claude-usage/data"


@dataclass
class RefreshConfig:
    """Configuration for the refresh loop."""

    interval: int = 60  # seconds between passes


@dataclass
class SessionConfig:
    """Configuration for the rolling session window."""

    max_age_hours: int = 5
    max_api_requests: int = 500  # display threshold for the usage percentage
    state_path: str = ".tokentally/session.json"


@dataclass
class PeriodConfig:
    """Anchor of the recurring weekly period."""

    anchor_weekday: int = 1  # Monday is 0
    anchor_hour: int = 8
    timezone: str = "Asia/Seoul"

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass
class BackendConfig:
    """Configuration for the query backend."""

    kind: str = "file"
    metrics_path: str = f"{DEFAULT_DATA_DIR}/metrics.json"
    logs_path: str = f"{DEFAULT_DATA_DIR}/logs.json"
    host: str = "localhost"
    port: int = 9090
    timeout: float = 5.0  # seconds
    max_retries: int = 0

    @property
    def endpoint(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class AggregationConfig:
    """Configuration for folding raw telemetry."""

    token_type_fallback: str = "input"


@dataclass
class PricingConfig:
    """Default token prices, US dollars per million tokens."""

    input_per_million: float = 3.0
    output_per_million: float = 15.0


@dataclass
class Config:
    """Main configuration container."""

    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    period: PeriodConfig = field(default_factory=PeriodConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    config_path: Path | None = None

    @classmethod
    def load(cls, path: Path | None = None) -> Config:
        """Load configuration from a file.

        Args:
            path: Path to config file. If None, searches for
                  .tokentally/config.toml in current directory and parents.

        Returns:
            Loaded configuration.

        Raises:
            FileNotFoundError: If no config file found.
            ValueError: If config file is invalid.
        """
        if path is None:
            path = cls._find_config()

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ValueError(f"Invalid TOML in {path}: {e}") from e

        return cls._from_dict(data, path)

    @classmethod
    def load_or_default(cls, path: Path | None = None) -> Config:
        """Load configuration or return default if not found."""
        try:
            return cls.load(path)
        except FileNotFoundError:
            return cls()

    @classmethod
    def _find_config(cls) -> Path:
        """Find config file by searching current directory and parents."""
        cwd = Path.cwd()
        for parent in [cwd, *cwd.parents]:
            config_path = parent / ".tokentally" / "config.toml"
            if config_path.exists():
                return config_path

        # Return expected path even if it doesn't exist
        return cwd / ".tokentally" / "config.toml"

    @classmethod
    def _from_dict(cls, data: dict[str, Any], path: Path | None = None) -> Config:
        """Create a Config from a dictionary.

        Raises:
            ValueError: If any value is out of range.
        """
        refresh_data = data.get("refresh", {})
        refresh = RefreshConfig(
            interval=_positive_int(refresh_data.get("interval", 60), "refresh.interval"),
        )

        session_data = data.get("session", {})
        session = SessionConfig(
            max_age_hours=_positive_int(
                session_data.get("max_age_hours", 5), "session.max_age_hours"
            ),
            max_api_requests=_positive_int(
                session_data.get("max_api_requests", 500), "session.max_api_requests"
            ),
            state_path=str(session_data.get("state_path", ".tokentally/session.json")),
        )

        period_data = data.get("period", {})
        period = PeriodConfig(
            anchor_weekday=_parse_weekday(period_data.get("anchor_weekday", "tuesday")),
            anchor_hour=_parse_hour(period_data.get("anchor_hour", 8)),
            timezone=_parse_timezone(period_data.get("timezone", "Asia/Seoul")),
        )

        backend_data = data.get("backend", {})
        kind = backend_data.get("kind", "file")
        if kind not in VALID_BACKENDS:
            raise ValueError(
                f"Invalid backend kind '{kind}'. "
                f"Valid kinds are: {', '.join(sorted(VALID_BACKENDS))}"
            )
        backend = BackendConfig(
            kind=kind,
            metrics_path=str(
                backend_data.get("metrics_path", f"{DEFAULT_DATA_DIR}/metrics.json")
            ),
            logs_path=str(backend_data.get("logs_path", f"{DEFAULT_DATA_DIR}/logs.json")),
            host=str(backend_data.get("host", "localhost")),
            port=_positive_int(backend_data.get("port", 9090), "backend.port"),
            timeout=float(backend_data.get("timeout", 5.0)),
            max_retries=int(backend_data.get("max_retries", 0)),
        )
        if backend.timeout <= 0:
            raise ValueError("backend.timeout must be positive")

        aggregation_data = data.get("aggregation", {})
        fallback = aggregation_data.get("token_type_fallback", "input")
        if fallback not in VALID_TOKEN_TYPE_FALLBACKS:
            raise ValueError(
                f"Invalid aggregation.token_type_fallback '{fallback}'. "
                f"Valid values are: {', '.join(sorted(VALID_TOKEN_TYPE_FALLBACKS))}"
            )
        aggregation = AggregationConfig(token_type_fallback=fallback)

        pricing_data = data.get("pricing", {})
        pricing = PricingConfig(
            input_per_million=float(pricing_data.get("input_per_million", 3.0)),
            output_per_million=float(pricing_data.get("output_per_million", 15.0)),
        )

        return cls(
            refresh=refresh,
            session=session,
            period=period,
            backend=backend,
            aggregation=aggregation,
            pricing=pricing,
            config_path=path,
        )

    def get_value(self, key_path: str) -> Any:
        """Get a configuration value by dot-separated path.

        Args:
            key_path: Dot-separated path to value (e.g. "backend.port").

        Returns:
            The configuration value.

        Raises:
            KeyError: If path is invalid.
        """
        parts = key_path.split(".")
        current = self
        for part in parts:
            if hasattr(current, part):
                current = getattr(current, part)
            elif isinstance(current, dict) and part in current:
                current = current[part]
            else:
                raise KeyError(f"Invalid config path: {key_path}")
        return current


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


def _parse_weekday(value: Any) -> int:
    """Accept a weekday name or a number (Monday is 0)."""
    if isinstance(value, str):
        name = value.strip().lower()
        for index, weekday in enumerate(WEEKDAYS):
            if weekday == name or weekday[:3] == name:
                return index
        raise ValueError(f"Invalid period.anchor_weekday '{value}'")
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 6:
        return value
    raise ValueError(f"Invalid period.anchor_weekday {value!r}")


def _parse_hour(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 23:
        return value
    raise ValueError(f"period.anchor_hour must be between 0 and 23, got {value!r}")


def _parse_timezone(value: Any) -> str:
    try:
        ZoneInfo(str(value))
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        # Directory names under the zoneinfo tree raise IsADirectoryError.
        raise ValueError(f"Unknown period.timezone '{value}'") from e
    return str(value)
