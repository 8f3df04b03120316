"""Refresh driver for tokentally.

Runs the aggregation pipeline on a timer and after session changes:
weekly period and session window -> backend -> summaries -> sink.
"""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from tokentally.errors import BackendConnectionError, BackendError
from tokentally.periods import SessionStore, WeeklyPeriod, weekly_period
from tokentally.telemetry.aggregator import AggregatedSummary, HourlyBucket

if TYPE_CHECKING:
    from tokentally.config import Config
    from tokentally.telemetry.backends import SummaryBackend

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(log_file: Path | None = None, level: int = logging.INFO) -> logging.Logger:
    """Attach a handler to the tokentally logger.

    Args:
        log_file: Rotating log file. Logs go to stderr when None.
        level: Logging level.

    Returns:
        The package logger.
    """
    package_logger = logging.getLogger("tokentally")
    package_logger.setLevel(level)
    # Avoid adding multiple handlers if re-initialized
    if package_logger.handlers:
        return package_logger

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    package_logger.addHandler(handler)
    return package_logger


@dataclass
class UsageSnapshot:
    """Everything one refresh pass produced.

    Attributes:
        weekly: Usage since the start of the weekly period.
        session: Usage since the effective session start.
        hourly: Per-hour usage over the last hourly_hours hours.
        period: The weekly period used.
        session_start: The effective session start used.
        refreshed_at: When the pass finished.
        last_error: Why the most recent pass failed, None if it succeeded.
    """

    weekly: AggregatedSummary
    session: AggregatedSummary
    hourly: list[HourlyBucket] = field(default_factory=list)
    period: WeeklyPeriod | None = None
    session_start: datetime | None = None
    refreshed_at: datetime | None = None
    last_error: str | None = None

    def session_usage_percent(self, max_api_requests: int) -> float:
        """Session API requests as a percentage of a threshold, capped at 100."""
        if max_api_requests <= 0:
            return 0.0
        return min(self.session.api_request_count / max_api_requests * 100, 100.0)


class UsageMonitor:
    """Runs refresh passes and keeps the latest good snapshot.

    A pass that fails on the backend leaves the previous snapshot in
    place and records the error. Overlapping passes are skipped rather
    than queued.
    """

    def __init__(
        self,
        config: Config,
        backend: SummaryBackend,
        session_store: SessionStore,
        sink: Callable[[UsageSnapshot], None] | None = None,
        clock: Callable[[], datetime] | None = None,
        hourly_hours: int = 24,
    ):
        """Initialize the monitor.

        Args:
            config: The tokentally configuration.
            backend: Source of summaries.
            session_store: Persisted session window.
            sink: Called with each new snapshot.
            clock: Returns the current time. Defaults to UTC wall clock.
            hourly_hours: How many hours of hourly buckets to fetch.
        """
        self.config = config
        self.backend = backend
        self.session_store = session_store
        self.sink = sink
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.hourly_hours = hourly_hours

        self.snapshot: UsageSnapshot | None = None
        self.last_error: str | None = None
        self.is_connected = False

        self._in_flight = threading.Lock()
        self._stop = threading.Event()

    def current_period(self, now: datetime | None = None) -> WeeklyPeriod:
        """Get the weekly period for now under the configured anchor."""
        period_config = self.config.period
        return weekly_period(
            now or self.clock(),
            anchor_weekday=period_config.anchor_weekday,
            anchor_hour=period_config.anchor_hour,
            tz=period_config.timezone,
        )

    def refresh(self) -> UsageSnapshot | None:
        """Run one aggregation pass.

        Returns:
            The new snapshot, the previous one if the backend failed, or
            None if another pass was already running.
        """
        if not self._in_flight.acquire(blocking=False):
            logger.debug("Refresh already in flight, skipping")
            return None

        try:
            now = self.clock()
            period = self.current_period(now)
            session_start = self.session_store.effective_start(now)

            try:
                self.backend.ensure_connected()
                weekly = self.backend.fetch_summary(period.start, now, probe=False)
                session = self.backend.fetch_summary(session_start, now, probe=False)
                hourly = self.backend.fetch_hourly(self.hourly_hours, now, probe=False)
            except BackendConnectionError as e:
                self.is_connected = False
                self._record_failure(str(e))
                return self.snapshot
            except BackendError as e:
                self.is_connected = True
                self._record_failure(f"Failed to fetch metrics: {e}")
                return self.snapshot

            self.is_connected = True
            self.last_error = None
            self.snapshot = UsageSnapshot(
                weekly=weekly,
                session=session,
                hourly=hourly,
                period=period,
                session_start=session_start,
                refreshed_at=self.clock(),
            )
            logger.info(
                "Refreshed: weekly $%.4f / %d tokens, session %d API requests",
                weekly.total_cost_usd,
                weekly.total_tokens,
                session.api_request_count,
            )
        finally:
            self._in_flight.release()

        if self.sink is not None:
            self.sink(self.snapshot)
        return self.snapshot

    def _record_failure(self, message: str) -> None:
        self.last_error = message
        if self.snapshot is not None:
            self.snapshot.last_error = message
        logger.warning("Refresh abandoned: %s", message)

    def reset_session(self) -> UsageSnapshot | None:
        """Start a new session now and refresh immediately."""
        self.session_store.reset(self.clock())
        return self.refresh()

    def set_session_start(self, start: datetime) -> UsageSnapshot | None:
        """Move the session start to an explicit past time and refresh.

        Raises:
            SessionValidationError: If start is out of range.
        """
        self.session_store.set_start(start, self.clock())
        return self.refresh()

    def run_forever(self) -> None:
        """Refresh every refresh.interval seconds until stop() is called."""
        interval = self.config.refresh.interval
        logger.info("Monitor started (interval %ds)", interval)

        while not self._stop.is_set():
            try:
                self.refresh()
            except Exception as e:
                logger.error(f"Error in refresh: {e}", exc_info=True)
            self._stop.wait(interval)

        logger.info("Monitor stopped")

    def stop(self) -> None:
        """Ask run_forever() to return after the current pass."""
        self._stop.set()
