"""Command-line argument parsing for CalendarSync.

Each subcommand stores its handler name in ``args.command``; the handlers
themselves live in :mod:`calendarsync.cli.commands`.
"""

import argparse
import logging
from datetime import date, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_OWNER = "local"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def parse_date(date_str: str) -> date:
    """Parse date string in YYYY-MM-DD format for command-line arguments.

    Args:
        date_str: Date string to parse in YYYY-MM-DD format

    Returns:
        Parsed date

    Raises:
        argparse.ArgumentTypeError: If date format is invalid

    Example:
        >>> parse_date("2024-01-15")
        datetime.date(2024, 1, 15)
    """
    try:
        return datetime.strptime(date_str, "%Y-%m-%d").date()
    except ValueError as err:
        raise argparse.ArgumentTypeError(
            f"Invalid date format: {date_str}. Use YYYY-MM-DD"
        ) from err


def positive_int(value: str) -> int:
    """Parse a strictly positive integer argument.

    Raises:
        argparse.ArgumentTypeError: If the value is not a positive integer
    """
    try:
        number = int(value)
    except ValueError as err:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got: {value}") from err
    if number <= 0:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got: {value}")
    return number


def _add_date_range(parser: argparse.ArgumentParser, required: bool) -> None:
    parser.add_argument(
        "--start", type=parse_date, required=required, help="First day (YYYY-MM-DD)"
    )
    parser.add_argument(
        "--end", type=parse_date, required=required, help="Last day, inclusive (YYYY-MM-DD)"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser with all subcommands.

    Returns:
        Configured ArgumentParser instance

    Example:
        >>> parser = create_parser()
        >>> args = parser.parse_args(["import", "calendar.ics"])
        >>> args.command
        'import'
    """
    parser = argparse.ArgumentParser(
        prog="calendarsync",
        description="CalendarSync - iCalendar import/export, feed subscriptions and "
        "recurring event expansion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s import work.ics                       # Import events from a file
  %(prog)s export -o calendar.ics                # Export all events
  %(prog)s subscribe "Holidays" https://example.com/holidays.ics
  %(prog)s sync                                  # Sync every auto-sync subscription
  %(prog)s view --start 2025-01-01 --end 2025-01-31
  %(prog)s describe "FREQ=WEEKLY;BYDAY=MO,WE"    # Explain a recurrence rule
  %(prog)s run                                   # Run the background scheduler
        """,
    )

    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        type=str.upper,
        help="Override configured log level",
    )
    parser.add_argument("--log-file", type=str, help="Also write logs to this file")
    parser.add_argument("--database", type=Path, help="SQLite database file to use")
    parser.add_argument(
        "--owner",
        default=DEFAULT_OWNER,
        help=f"Calendar owner id (default: {DEFAULT_OWNER})",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    import_parser = subparsers.add_parser("import", help="Import events from an .ics file")
    import_parser.add_argument("file", type=Path, help="iCalendar file to import")
    import_parser.add_argument("--color", help="Color for newly imported events")

    export_parser = subparsers.add_parser("export", help="Export events as iCalendar")
    export_parser.add_argument(
        "-o", "--output", type=Path, help="Output file (default: standard output)"
    )
    export_parser.add_argument("--name", default="CalendarSync", help="Calendar name")
    _add_date_range(export_parser, required=False)

    subscribe_parser = subparsers.add_parser("subscribe", help="Subscribe to a calendar feed")
    subscribe_parser.add_argument("name", help="Display name for the subscription")
    subscribe_parser.add_argument("url", help="Feed URL (http, https or webcal)")
    subscribe_parser.add_argument("--color", help="Color for the feed's events")
    subscribe_parser.add_argument(
        "--interval", type=positive_int, help="Sync interval in minutes"
    )
    subscribe_parser.add_argument(
        "--no-auto-sync",
        dest="auto_sync",
        action="store_false",
        help="Only sync when requested",
    )

    unsubscribe_parser = subparsers.add_parser(
        "unsubscribe", help="Delete a subscription and its events"
    )
    unsubscribe_parser.add_argument("subscription_id", help="Subscription id")

    subparsers.add_parser("subscriptions", help="List subscriptions and their sync status")

    sync_parser = subparsers.add_parser("sync", help="Sync subscriptions now")
    sync_parser.add_argument(
        "subscription_id",
        nargs="?",
        help="Subscription to sync (default: every auto-sync subscription)",
    )

    subparsers.add_parser("run", help="Run the background sync scheduler")

    view_parser = subparsers.add_parser("view", help="Show events in a date range")
    _add_date_range(view_parser, required=True)
    view_parser.add_argument("--timezone", help="Display timezone (default: UTC)")

    describe_parser = subparsers.add_parser(
        "describe", help="Describe a recurrence rule in plain English"
    )
    describe_parser.add_argument("rule", help="RRULE value, e.g. FREQ=DAILY;COUNT=5")

    return parser


__all__ = ["DEFAULT_OWNER", "create_parser", "parse_date", "positive_int"]
