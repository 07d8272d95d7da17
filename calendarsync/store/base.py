"""Abstract persistence interfaces for events and subscriptions."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from ..ics.models import Event, EventData
    from ..sources.models import CalendarSubscription, SubscriptionCreate

# Fields a caller may change on an existing event
UPDATABLE_EVENT_FIELDS = frozenset(
    {
        "title",
        "color",
        "description",
        "location",
        "start",
        "end",
        "all_day",
        "rrule",
        "dtstart",
        "duration",
        "exdates",
    }
)

UPDATABLE_SUBSCRIPTION_FIELDS = frozenset(
    {
        "name",
        "url",
        "color",
        "auto_sync",
        "sync_interval_minutes",
        "etag",
        "last_modified",
    }
)


class StoreError(Exception):
    """Exception raised when a store operation cannot be completed."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.record_id = record_id


def check_fields(changes: dict[str, Any], allowed: frozenset) -> None:
    """Reject changes to fields outside ``allowed``.

    Raises:
        StoreError: If an unknown or protected field is present
    """
    unknown = set(changes) - allowed
    if unknown:
        raise StoreError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")


class EventStore(ABC):
    """Persistence for events. Each call is atomic for the row it touches."""

    @abstractmethod
    async def create_event(self, data: "EventData") -> "Event":
        """Persist a new event and return it with its assigned id."""

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional["Event"]:
        """Fetch an event by id."""

    @abstractmethod
    async def update_event(self, event_id: str, changes: dict[str, Any]) -> "Event":
        """Apply field changes to an event.

        Raises:
            StoreError: If the event does not exist or a field is not updatable
        """

    @abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Delete an event.

        Raises:
            StoreError: If the event does not exist
        """

    @abstractmethod
    async def list_events(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list["Event"]:
        """List an owner's events ordered by start.

        With a range, plain events must touch ``[start, end)``; recurring
        masters are returned whenever their series starts before ``end``.
        """

    @abstractmethod
    async def list_sourced_events(
        self, subscription_id: Optional[str], owner_id: Optional[str] = None
    ) -> list["Event"]:
        """List events carrying a source uid for one subscription.

        ``subscription_id=None`` selects manually imported events, which then
        requires ``owner_id``.
        """

    @abstractmethod
    async def count_by_subscription(self, subscription_id: str) -> int:
        """Count events that came from a subscription."""

    @abstractmethod
    async def delete_by_subscription(self, subscription_id: str) -> int:
        """Delete every event that came from a subscription; return how many."""


class SubscriptionStore(ABC):
    """Persistence for calendar subscriptions."""

    @abstractmethod
    async def create_subscription(self, data: "SubscriptionCreate") -> "CalendarSubscription":
        """Persist a new subscription and return it with its assigned id."""

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional["CalendarSubscription"]:
        """Fetch a subscription by id."""

    @abstractmethod
    async def list_subscriptions(
        self, owner_id: Optional[str] = None
    ) -> list["CalendarSubscription"]:
        """List subscriptions, optionally for one owner."""

    @abstractmethod
    async def update_subscription(
        self, subscription_id: str, changes: dict[str, Any]
    ) -> "CalendarSubscription":
        """Apply field changes to a subscription.

        Raises:
            StoreError: If the subscription does not exist or a field is not updatable
        """

    @abstractmethod
    async def record_sync(
        self,
        subscription_id: str,
        synced_at: datetime,
        error: Optional[str],
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        update_validators: bool = False,
    ) -> None:
        """Write the outcome of a sync cycle.

        Always sets ``last_sync_at`` and sets or clears ``last_sync_error``.
        Cache validators are replaced only when ``update_validators`` is set.
        """

    @abstractmethod
    async def delete_subscription(self, subscription_id: str) -> None:
        """Delete a subscription. Callers cascade its events first.

        Raises:
            StoreError: If the subscription does not exist
        """

    async def list_auto_sync(self) -> list["CalendarSubscription"]:
        """List subscriptions the scheduler should consider."""
        return [s for s in await self.list_subscriptions() if s.auto_sync]
