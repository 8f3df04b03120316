"""Tokentally - usage tracking for Claude Code telemetry.

Tokentally folds the OpenTelemetry metrics and logs that Claude Code
exports into cost, token and request totals for a weekly billing period
and a rolling session window, either from local export files or from a
Prometheus-compatible server.
"""

__version__ = "0.1.0"

from tokentally.config import Config
from tokentally.errors import (
    BackendConnectionError,
    BackendError,
    BackendQueryError,
    SessionValidationError,
    TokentallyError,
)
from tokentally.periods import SessionStore, SessionWindow, WeeklyPeriod, weekly_period

__all__ = [
    "Config",
    "TokentallyError",
    "BackendError",
    "BackendConnectionError",
    "BackendQueryError",
    "SessionValidationError",
    "SessionStore",
    "SessionWindow",
    "WeeklyPeriod",
    "weekly_period",
]
