"""Calendar subscriptions: reconciliation, scheduling and management."""

from .exceptions import SourceError, SubscriptionNotFoundError, SubscriptionValidationError
from .manager import SubscriptionManager
from .models import (
    CalendarSubscription,
    ImportResult,
    ReconcileResult,
    SubscriptionCreate,
    SubscriptionUpdate,
    SyncOutcome,
    SyncResult,
    SyncState,
    SyncStatus,
)
from .reconciler import Reconciler
from .scheduler import SyncScheduler

__all__ = [
    "CalendarSubscription",
    "ImportResult",
    "ReconcileResult",
    "Reconciler",
    "SourceError",
    "SubscriptionCreate",
    "SubscriptionManager",
    "SubscriptionNotFoundError",
    "SubscriptionUpdate",
    "SubscriptionValidationError",
    "SyncOutcome",
    "SyncResult",
    "SyncScheduler",
    "SyncState",
    "SyncStatus",
]
