"""ICS-specific exceptions for error handling."""

from typing import Optional


class ICSError(Exception):
    """Base exception for ICS-related errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class InvalidFeedFormat(ICSError):
    """Exception raised when a document is not a readable iCalendar container."""


class FeedUnreachable(ICSError):
    """Exception raised when a feed cannot be retrieved (network, HTTP status, timeout)."""


class InvalidRecurrenceRule(ICSError):
    """Exception raised when a recurrence rule cannot be parsed."""

    def __init__(self, message: str, rule: Optional[str] = None):
        super().__init__(message)
        self.rule = rule
