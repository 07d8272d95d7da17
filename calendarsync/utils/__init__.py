"""Utility functions and helpers package."""

from .helpers import ensure_utc, format_duration, parse_iso_datetime, to_timezone, utc_now
from .logging import get_logger, setup_logging

__all__ = [
    "ensure_utc",
    "format_duration",
    "get_logger",
    "parse_iso_datetime",
    "setup_logging",
    "to_timezone",
    "utc_now",
]
