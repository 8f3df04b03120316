"""CLI commands for usage queries.

This module provides the command handlers for the usage subcommands:
- show: Display weekly and session usage summaries
- hourly: Display per-hour usage buckets
- session status/reset/set: Inspect or move the session window
- period: Display the current weekly period
- watch: Refresh on a timer until interrupted
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from tokentally.errors import BackendError, SessionValidationError

if TYPE_CHECKING:
    import argparse

    from tokentally.config import Config
    from tokentally.monitor import UsageSnapshot
    from tokentally.periods import SessionStore
    from tokentally.telemetry.aggregator import AggregatedSummary


def format_number(n: int) -> str:
    """Format a number with thousands separators."""
    return f"{n:,}"


def format_cost(usd: float) -> str:
    """Format a dollar amount."""
    return f"${usd:,.2f}"


def format_tokens(n: int) -> str:
    """Format a token count compactly (1.2K, 3.4M)."""
    if n >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    if n >= 1_000:
        return f"{n / 1_000:.1f}K"
    return str(n)


def format_percent(rate: float) -> str:
    """Format a percentage value."""
    return f"{rate:.1f}%"


def format_duration(seconds: float) -> str:
    """Format a number of seconds as 45s, 12m or 3h 5m."""
    total_seconds = int(seconds)
    if total_seconds < 60:
        return f"{total_seconds}s"
    elif total_seconds < 3600:
        minutes = total_seconds // 60
        return f"{minutes}m"
    else:
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        return f"{hours}h {minutes}m"


def time_since(moment: datetime | None, now: datetime | None = None) -> str:
    """Describe how long ago a moment was."""
    if moment is None:
        return "never"
    now = now or datetime.now(timezone.utc)
    seconds = (now - moment).total_seconds()
    if seconds < 60:
        return "just now"
    return f"{format_duration(seconds)} ago"


def load_config(args: argparse.Namespace) -> Config:
    """Load configuration honoring the global --config and --backend flags.

    Raises:
        FileNotFoundError: If --config names a missing file.
        ValueError: If the configuration is invalid.
    """
    from tokentally.config import Config

    config_path = getattr(args, "config", None)
    if config_path:
        config = Config.load(Path(config_path))
    else:
        config = Config.load_or_default()

    backend_kind = getattr(args, "backend", None)
    if backend_kind:
        config.backend.kind = backend_kind
    return config


def session_store_for(config: Config) -> SessionStore:
    """Build the session store described by configuration."""
    from tokentally.periods import SessionStore

    return SessionStore(
        Path(config.session.state_path).expanduser(),
        max_age_hours=config.session.max_age_hours,
    )


def _print_summary(title: str, summary: AggregatedSummary) -> None:
    print(f"=== {title} ===")
    print(f"Cost: {format_cost(summary.total_cost_usd)}")
    print(
        f"Tokens: {format_tokens(summary.total_tokens)} "
        f"(input {format_number(summary.input_tokens)}, "
        f"output {format_number(summary.output_tokens)})"
    )
    print(f"API requests: {format_number(summary.api_request_count)}")
    print(f"Prompts: {format_number(summary.prompt_count)}")
    print(f"Sessions: {format_number(summary.session_count)}")
    print(f"Active time: {format_duration(summary.active_time_seconds)}")
    if summary.lines_of_code or summary.commit_count or summary.pull_request_count:
        print(
            f"Code: {format_number(summary.lines_of_code)} lines, "
            f"{summary.commit_count} commits, {summary.pull_request_count} PRs"
        )
    print(f"Updated: {time_since(summary.last_updated)}")


def cmd_usage_show(args: argparse.Namespace) -> int:
    """Handle 'show' command - display usage summaries."""
    from tokentally.monitor import UsageMonitor
    from tokentally.telemetry.backends import create_backend

    window = getattr(args, "window", None)
    as_json = getattr(args, "json", False)

    backend = None
    try:
        config = load_config(args)
        backend = create_backend(config)
        monitor = UsageMonitor(config, backend, session_store_for(config))
        now = monitor.clock()
        period = monitor.current_period(now)
        session_start = monitor.session_store.effective_start(now)

        backend.ensure_connected()
        summaries: dict[str, AggregatedSummary] = {}
        if window in (None, "weekly"):
            summaries["weekly"] = backend.fetch_summary(period.start, now, probe=False)
        if window in (None, "session"):
            summaries["session"] = backend.fetch_summary(session_start, now, probe=False)
    except BackendError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    finally:
        if backend is not None:
            backend.close()

    if as_json:
        output = {name: summary.to_dict() for name, summary in summaries.items()}
        output["period"] = {"start": period.start.isoformat(), "end": period.end.isoformat()}
        output["session_start"] = session_start.isoformat()
        print(json.dumps(output, indent=2))
        return 0

    if "weekly" in summaries:
        _print_summary(f"Weekly Usage ({period.format()})", summaries["weekly"])
    if "session" in summaries:
        if "weekly" in summaries:
            print()
        session = summaries["session"]
        local_start = session_start.astimezone(config.period.zone)
        _print_summary(f"Session Usage (since {local_start.strftime('%m/%d %H:%M')})", session)
        threshold = config.session.max_api_requests
        percent = min(session.api_request_count / threshold * 100, 100.0)
        print(f"Session limit: {format_percent(percent)} of {format_number(threshold)} requests")

    return 0


def cmd_usage_hourly(args: argparse.Namespace) -> int:
    """Handle 'hourly' command - display per-hour usage."""
    from tokentally.telemetry.backends import create_backend

    hours = getattr(args, "hours", 24)
    as_json = getattr(args, "json", False)

    if hours <= 0:
        print("Error: --hours must be positive", file=sys.stderr)
        return 1

    backend = None
    try:
        config = load_config(args)
        backend = create_backend(config)
        buckets = backend.fetch_hourly(hours)
    except BackendError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    finally:
        if backend is not None:
            backend.close()

    if as_json:
        print(json.dumps([bucket.to_dict() for bucket in buckets], indent=2))
        return 0

    if not buckets:
        print(f"No usage in the last {hours} hours.")
        return 0

    print(f"=== Hourly Usage (Last {hours} Hours) ===")
    zone = config.period.zone
    for bucket in buckets:
        hour = bucket.hour_start.astimezone(zone).strftime("%m/%d %H:00")
        cost = format_cost(bucket.total_cost_usd).rjust(9)
        tokens = format_tokens(bucket.total_tokens).rjust(7)
        print(f"  {hour}  {cost}  {tokens} tokens  {bucket.api_request_count} requests")

    return 0


def cmd_session_status(args: argparse.Namespace) -> int:
    """Handle 'session status' command."""
    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    store = session_store_for(config)
    now = datetime.now(timezone.utc)
    window = store.load()
    start = window.effective_start(now)
    zone = config.period.zone

    print(f"Session start: {start.astimezone(zone).strftime('%Y-%m-%d %H:%M:%S %Z')}")
    print(f"Elapsed: {format_duration((now - start).total_seconds())}")
    if not window.is_set:
        print(f"No session start recorded; using the last {window.max_age_hours} hours.")
    elif start == window.earliest_start(now):
        print(f"Recorded start is older than {window.max_age_hours} hours; clamped.")
    return 0


def cmd_session_reset(args: argparse.Namespace) -> int:
    """Handle 'session reset' command - start a new session now."""
    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        window = session_store_for(config).reset()
    except OSError as e:
        print(f"Error writing session state: {e}", file=sys.stderr)
        return 1

    started = datetime.fromtimestamp(window.start_epoch_seconds, tz=config.period.zone)
    print(f"Session reset at {started.strftime('%Y-%m-%d %H:%M:%S %Z')}")
    return 0


def parse_start_time(value: str) -> datetime:
    """Parse an ISO-8601 time; values without an offset are local time.

    Raises:
        ValueError: If the value is not ISO-8601.
    """
    moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return moment


def cmd_session_set(args: argparse.Namespace) -> int:
    """Handle 'session set <time>' command - move the session start."""
    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        candidate = parse_start_time(args.start)
    except ValueError:
        print(f"Error: Invalid time '{args.start}' (expected ISO-8601)", file=sys.stderr)
        return 1

    try:
        window = session_store_for(config).set_start(candidate)
    except SessionValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error writing session state: {e}", file=sys.stderr)
        return 1

    started = datetime.fromtimestamp(window.start_epoch_seconds, tz=config.period.zone)
    print(f"Session start set to {started.strftime('%Y-%m-%d %H:%M:%S %Z')}")
    return 0


def cmd_period(args: argparse.Namespace) -> int:
    """Handle 'period' command - show the current weekly period."""
    from tokentally.periods import weekly_period

    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    now = datetime.now(timezone.utc)
    period_config = config.period
    period = weekly_period(
        now,
        anchor_weekday=period_config.anchor_weekday,
        anchor_hour=period_config.anchor_hour,
        tz=period_config.timezone,
    )

    print(f"Weekly period: {period.format()} ({period_config.timezone})")
    print(f"Resets in: {format_duration((period.end - now).total_seconds() + 1)}")
    return 0


def _print_snapshot(snapshot: UsageSnapshot, max_api_requests: int) -> None:
    weekly = snapshot.weekly
    session = snapshot.session
    refreshed = snapshot.refreshed_at.strftime("%H:%M:%S") if snapshot.refreshed_at else "-"
    print(
        f"[{refreshed}] week {format_cost(weekly.total_cost_usd)} "
        f"{format_tokens(weekly.total_tokens)} tokens | "
        f"session {format_cost(session.total_cost_usd)} "
        f"{session.api_request_count} requests "
        f"({format_percent(snapshot.session_usage_percent(max_api_requests))})",
        flush=True,
    )


def cmd_watch(args: argparse.Namespace) -> int:
    """Handle 'watch' command - refresh on a timer until interrupted."""
    from tokentally.monitor import UsageMonitor, configure_logging
    from tokentally.telemetry.backends import create_backend

    try:
        config = load_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    interval = getattr(args, "interval", None)
    if interval is not None:
        if interval <= 0:
            print("Error: --interval must be positive", file=sys.stderr)
            return 1
        config.refresh.interval = interval

    log_file = getattr(args, "log_file", None)
    configure_logging(Path(log_file).expanduser() if log_file else None)

    backend = create_backend(config)
    monitor = UsageMonitor(
        config,
        backend,
        session_store_for(config),
        sink=lambda snapshot: _print_snapshot(snapshot, config.session.max_api_requests),
    )
    try:
        monitor.run_forever()
    except KeyboardInterrupt:
        monitor.stop()
        print("\nStopped.")
    finally:
        backend.close()

    if monitor.last_error:
        print(f"Last error: {monitor.last_error}", file=sys.stderr)
    return 0
