"""Subscription-specific exceptions."""

from typing import Optional


class SourceError(Exception):
    """Base exception for subscription-related errors."""

    def __init__(self, message: str, subscription_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subscription_id = subscription_id


class SubscriptionNotFoundError(SourceError):
    """Exception raised when a subscription id does not exist."""


class SubscriptionValidationError(SourceError):
    """Exception raised when a subscription URL does not yield a readable feed."""
