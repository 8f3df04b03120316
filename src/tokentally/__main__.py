"""CLI entry point for tokentally.

Usage:
    python -m tokentally [--config PATH] [--backend file|prometheus] <command> [options]

Commands:
    show [--window weekly|session] [--json]
    hourly [--hours N] [--json]
    session status|reset
    session set <ISO-8601 time>
    period
    watch [--interval SECONDS] [--log-file PATH]
    config validate
    config get <key>
"""

from __future__ import annotations

import argparse
import sys
from typing import NoReturn

from tokentally import __version__


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="tokentally",
        description="Usage tracking for Claude Code telemetry",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config",
        help="Path to config.toml (default: search .tokentally/config.toml upward)",
    )
    parser.add_argument(
        "--backend",
        choices=["file", "prometheus"],
        help="Override the configured query backend",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # show command
    show_parser = subparsers.add_parser("show", help="Show weekly and session usage")
    show_parser.add_argument(
        "--window",
        choices=["weekly", "session"],
        help="Only show one window (default: both)",
    )
    show_parser.add_argument(
        "--json",
        action="store_true",
        help="Print JSON instead of text",
    )

    # hourly command
    hourly_parser = subparsers.add_parser("hourly", help="Show usage per hour")
    hourly_parser.add_argument(
        "--hours",
        type=int,
        default=24,
        help="Number of hours to cover (default: 24)",
    )
    hourly_parser.add_argument(
        "--json",
        action="store_true",
        help="Print JSON instead of text",
    )

    # session command
    session_parser = subparsers.add_parser("session", help="Session window management")
    session_subparsers = session_parser.add_subparsers(
        dest="session_command", help="Session subcommands"
    )
    session_subparsers.add_parser("status", help="Show the effective session start")
    session_subparsers.add_parser("reset", help="Start a new session now")
    set_parser = session_subparsers.add_parser("set", help="Set the session start time")
    set_parser.add_argument(
        "start",
        help="Start time in ISO-8601 (e.g. 2025-01-07T09:30); no offset means local time",
    )

    # period command
    subparsers.add_parser("period", help="Show the current weekly period")

    # watch command
    watch_parser = subparsers.add_parser("watch", help="Refresh usage on a timer")
    watch_parser.add_argument(
        "--interval",
        type=int,
        help="Seconds between refreshes (default: refresh.interval from config)",
    )
    watch_parser.add_argument(
        "--log-file",
        help="Write logs to a rotating file instead of stderr",
    )

    # config command
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(
        dest="config_command", help="Config subcommands"
    )

    # config validate
    config_subparsers.add_parser("validate", help="Validate configuration")

    # config get
    get_parser = config_subparsers.add_parser("get", help="Get configuration value")
    get_parser.add_argument("key", help="Configuration key (e.g. backend.port)")

    return parser


def cmd_config_get(args: argparse.Namespace) -> int:
    """Handle 'config get' command."""
    from tokentally.telemetry.cli import load_config

    try:
        config = load_config(args)
        value = config.get_value(args.key)
        print(value)
        return 0
    except KeyError:
        print(f"Error: Config key not found: {args.key}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error reading config: {e}", file=sys.stderr)
        return 1


def cmd_config_validate(args: argparse.Namespace) -> int:
    """Handle 'config validate' command."""
    from pathlib import Path

    from tokentally.config import Config

    try:
        config = Config.load(Path(args.config) if args.config else None)
        print(f"Configuration valid: {config.config_path}")
        print(f"  Refresh interval: {config.refresh.interval}s")
        print(
            f"  Session: {config.session.max_age_hours}h window, "
            f"{config.session.max_api_requests} request limit"
        )
        print(
            f"  Period: weekday {config.period.anchor_weekday} "
            f"{config.period.anchor_hour:02d}:00 {config.period.timezone}"
        )
        if config.backend.kind == "prometheus":
            print(f"  Backend: prometheus at {config.backend.endpoint}")
        else:
            print(f"  Backend: file ({config.backend.metrics_path}, {config.backend.logs_path})")
        print(f"  Token type fallback: {config.aggregation.token_type_fallback}")
        return 0
    except FileNotFoundError as e:
        print(f"No configuration found: {e}", file=sys.stderr)
        return 0  # Missing config is not an error
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


def main() -> NoReturn:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "show":
        from tokentally.telemetry.cli import cmd_usage_show

        sys.exit(cmd_usage_show(args))
    elif args.command == "hourly":
        from tokentally.telemetry.cli import cmd_usage_hourly

        sys.exit(cmd_usage_hourly(args))
    elif args.command == "session":
        if args.session_command == "status":
            from tokentally.telemetry.cli import cmd_session_status

            sys.exit(cmd_session_status(args))
        elif args.session_command == "reset":
            from tokentally.telemetry.cli import cmd_session_reset

            sys.exit(cmd_session_reset(args))
        elif args.session_command == "set":
            from tokentally.telemetry.cli import cmd_session_set

            sys.exit(cmd_session_set(args))
        else:
            parser.parse_args(["session", "--help"])
            sys.exit(1)
    elif args.command == "period":
        from tokentally.telemetry.cli import cmd_period

        sys.exit(cmd_period(args))
    elif args.command == "watch":
        from tokentally.telemetry.cli import cmd_watch

        sys.exit(cmd_watch(args))
    elif args.command == "config":
        if args.config_command == "validate":
            sys.exit(cmd_config_validate(args))
        elif args.config_command == "get":
            sys.exit(cmd_config_get(args))
        else:
            parser.parse_args(["config", "--help"])
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
