"""Event and subscription persistence."""

from .base import EventStore, StoreError, SubscriptionStore
from .database import SQLiteStore
from .memory import MemoryStore

__all__ = ["EventStore", "MemoryStore", "SQLiteStore", "StoreError", "SubscriptionStore"]
