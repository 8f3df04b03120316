"""Time windows for usage aggregation.

Two windows are tracked:
- The weekly period, a recurring seven-day window anchored to a fixed
  weekday and hour in a fixed time zone (Tuesday 08:00 Asia/Seoul by
  default). It is derived from the clock alone and never stored.
- The session window, a rolling window whose start is persisted and
  clamped so it never reaches back further than max_age_hours.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

from tokentally.errors import SessionValidationError
from tokentally.telemetry.aggregator import ensure_aware

logger = logging.getLogger(__name__)

TUESDAY = 1
DEFAULT_ANCHOR_HOUR = 8
DEFAULT_TIMEZONE = "Asia/Seoul"
DEFAULT_MAX_AGE_HOURS = 5


@dataclass(frozen=True)
class WeeklyPeriod:
    """A seven-day window.

    Attributes:
        start: The anchor instant opening the period.
        end: One second before the next anchor.
    """

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        """Check whether a moment falls inside the period.

        Bounds have one-second resolution, so sub-second parts of the
        moment are dropped before comparing.
        """
        moment = ensure_aware(moment).replace(microsecond=0)
        return self.start <= moment <= self.end

    def format(self, fmt: str = "%m/%d %H:%M") -> str:
        """Format as "start ~ end" in the period's own time zone."""
        return f"{self.start.strftime(fmt)} ~ {self.end.strftime(fmt)}"


def weekly_period(
    now: datetime,
    anchor_weekday: int = TUESDAY,
    anchor_hour: int = DEFAULT_ANCHOR_HOUR,
    tz: str | ZoneInfo = DEFAULT_TIMEZONE,
) -> WeeklyPeriod:
    """Compute the weekly period containing now.

    Args:
        now: Current time. Naive values are taken as UTC.
        anchor_weekday: Weekday the period starts on (Monday is 0).
        anchor_hour: Hour of day the period starts at.
        tz: Time zone the anchor is expressed in.

    Returns:
        The WeeklyPeriod, with start and end in the anchor's time zone.
    """
    zone = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)
    local = ensure_aware(now).astimezone(zone)

    days_since_anchor = (local.weekday() - anchor_weekday) % 7
    if days_since_anchor == 0 and local.hour < anchor_hour:
        # Anchor day, but before the anchor hour: still last week's period.
        days_since_anchor = 7

    anchor_date: date = local.date() - timedelta(days=days_since_anchor)
    start = datetime.combine(anchor_date, time(hour=anchor_hour), tzinfo=zone)
    next_start = datetime.combine(
        anchor_date + timedelta(days=7), time(hour=anchor_hour), tzinfo=zone
    )
    return WeeklyPeriod(start=start, end=next_start - timedelta(seconds=1))


@dataclass
class SessionWindow:
    """Rolling session window with a persisted, clamped start.

    Attributes:
        start_epoch_seconds: Persisted start, 0 meaning never set.
        max_age_hours: Maximum reach of the window into the past.
    """

    start_epoch_seconds: float = 0.0
    max_age_hours: int = DEFAULT_MAX_AGE_HOURS

    @property
    def max_age(self) -> timedelta:
        return timedelta(hours=self.max_age_hours)

    @property
    def is_set(self) -> bool:
        return self.start_epoch_seconds > 0

    def earliest_start(self, now: datetime) -> datetime:
        """The oldest start the window may have at this moment."""
        return ensure_aware(now) - self.max_age

    def effective_start(self, now: datetime) -> datetime:
        """Get the start callers should aggregate from.

        Returns:
            max(persisted start, now - max_age), or now - max_age when no
            start was ever persisted.
        """
        floor = self.earliest_start(now)
        if not self.is_set:
            return floor
        persisted = datetime.fromtimestamp(self.start_epoch_seconds, tz=timezone.utc)
        return max(persisted, floor)

    def validate_start(self, candidate: datetime, now: datetime) -> datetime:
        """Check an explicit start time against the allowed range.

        Args:
            candidate: Proposed session start.
            now: Current time.

        Returns:
            The candidate as an aware datetime.

        Raises:
            SessionValidationError: If the candidate is in the future or
                older than max_age_hours.
        """
        candidate = ensure_aware(candidate)
        now = ensure_aware(now)
        if candidate > now:
            raise SessionValidationError("Cannot set future time")
        if candidate < self.earliest_start(now):
            raise SessionValidationError(
                f"Cannot set more than {self.max_age_hours} hours ago"
            )
        return candidate


class SessionStore:
    """Persists the session start as JSON.

    Writers are serialized with a lock so a reset racing a refresh cannot
    lose an update. A missing or unreadable file reads as "never set".
    """

    DEFAULT_STATE_PATH = ".tokentally/session.json"

    def __init__(
        self,
        state_path: Path | None = None,
        max_age_hours: int = DEFAULT_MAX_AGE_HOURS,
    ):
        """Initialize the store.

        Args:
            state_path: Path to the JSON state file. Defaults to
                        .tokentally/session.json in the current directory.
            max_age_hours: Maximum session window reach.
        """
        if state_path is None:
            state_path = Path.cwd() / self.DEFAULT_STATE_PATH
        self.state_path = Path(state_path)
        self.max_age_hours = max_age_hours
        self._lock = threading.Lock()

    def load(self) -> SessionWindow:
        """Read the persisted window."""
        with self._lock:
            return SessionWindow(
                start_epoch_seconds=self._read_start(),
                max_age_hours=self.max_age_hours,
            )

    def effective_start(self, now: datetime | None = None) -> datetime:
        """Get the clamped session start at now."""
        return self.load().effective_start(now or datetime.now(timezone.utc))

    def reset(self, now: datetime | None = None) -> SessionWindow:
        """Start a new session at now.

        Returns:
            The updated window.
        """
        now = ensure_aware(now or datetime.now(timezone.utc))
        with self._lock:
            self._write_start(now.timestamp())
            logger.info("Session reset at %s", now.isoformat())
            return SessionWindow(now.timestamp(), self.max_age_hours)

    def set_start(self, candidate: datetime, now: datetime | None = None) -> SessionWindow:
        """Set the session start to an explicit past time.

        Args:
            candidate: Proposed start.
            now: Current time. Defaults to the wall clock.

        Returns:
            The updated window.

        Raises:
            SessionValidationError: If the candidate is out of range. The
                persisted value is left untouched.
        """
        now = ensure_aware(now or datetime.now(timezone.utc))
        window = SessionWindow(max_age_hours=self.max_age_hours)
        candidate = window.validate_start(candidate, now)
        with self._lock:
            self._write_start(candidate.timestamp())
            logger.info("Session start set to %s", candidate.isoformat())
            return SessionWindow(candidate.timestamp(), self.max_age_hours)

    def _read_start(self) -> float:
        if not self.state_path.exists():
            return 0.0

        try:
            with open(self.state_path) as f:
                data = json.load(f)
            start = float(data.get("start_epoch_seconds", 0.0))
        except (json.JSONDecodeError, OSError, AttributeError, TypeError, ValueError) as e:
            logger.warning("Ignoring unreadable session state %s: %s", self.state_path, e)
            return 0.0

        return start if start > 0 else 0.0

    def _write_start(self, start: float) -> None:
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.state_path.parent, prefix=".session-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"start_epoch_seconds": start}, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.state_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
