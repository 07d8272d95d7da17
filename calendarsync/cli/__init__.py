"""CLI module for CalendarSync.

This module provides the command-line interface: argument parsing, logging
and settings overrides, and dispatch to subcommand handlers.
"""

import argparse
from typing import Optional

from ..config.settings import CalendarSyncSettings, get_settings
from ..utils.logging import setup_logging
from .parser import create_parser, parse_date


def apply_cli_overrides(
    settings: CalendarSyncSettings, args: argparse.Namespace
) -> CalendarSyncSettings:
    """Apply global command-line options on top of the loaded settings.

    Args:
        settings: Loaded settings
        args: Parsed command line arguments

    Returns:
        Settings with ``--log-level`` and ``--log-file`` applied
    """
    if getattr(args, "log_level", None):
        settings.log_level = args.log_level
    if getattr(args, "log_file", None):
        settings.log_file = args.log_file
    return settings


async def main_entry(argv: Optional[list[str]] = None) -> int:
    """Main entry point with argument parsing.

    Args:
        argv: Arguments to parse (``sys.argv[1:]`` by default)

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    # Imported here so parsing --help never opens the database
    from ..main import CalendarSyncApp  # noqa: PLC0415
    from .commands import run_command  # noqa: PLC0415

    parser = create_parser()
    args = parser.parse_args(argv)

    settings = apply_cli_overrides(get_settings(), args)
    setup_logging(log_level=settings.log_level, log_file=settings.log_file)

    async with CalendarSyncApp(settings, database_path=args.database) as app:
        return await run_command(app, args)


__all__ = ["apply_cli_overrides", "create_parser", "main_entry", "parse_date"]
