"""Failure types surfaced to callers of tokentally.

Missing telemetry and malformed fragments are not errors (they read as
zero). Only backend reachability and bad session input propagate.
"""

from __future__ import annotations


class TokentallyError(Exception):
    """Base class for tokentally failures."""


class BackendError(TokentallyError):
    """A query backend could not produce a summary for this pass."""


class BackendConnectionError(BackendError):
    """The backend could not be reached (health probe or transport failed)."""

    def __init__(self, endpoint: str, reason: str | None = None):
        self.endpoint = endpoint
        self.reason = reason
        message = f"Cannot connect to {endpoint}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class BackendQueryError(BackendError):
    """The backend was reachable but rejected or garbled a query."""

    def __init__(self, query: str, reason: str):
        self.query = query
        self.reason = reason
        super().__init__(f"Query failed ({query}): {reason}")


class SessionValidationError(TokentallyError):
    """An explicit session start time falls outside the allowed range."""
