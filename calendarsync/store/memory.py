"""In-process event and subscription store."""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from ..ics.models import Event, EventData
from ..sources.models import CalendarSubscription, SubscriptionCreate
from ..utils.helpers import utc_now
from .base import (
    UPDATABLE_EVENT_FIELDS,
    UPDATABLE_SUBSCRIPTION_FIELDS,
    EventStore,
    StoreError,
    SubscriptionStore,
    check_fields,
)

logger = logging.getLogger(__name__)


class MemoryStore(EventStore, SubscriptionStore):
    """Dictionary-backed store, used for tests and embedding."""

    def __init__(self) -> None:
        self.events: dict[str, Event] = {}
        self.subscriptions: dict[str, CalendarSubscription] = {}

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    # Events

    async def create_event(self, data: EventData) -> Event:
        event = Event(id=self._new_id(), **data.model_dump())
        self.events[event.id] = event
        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        return self.events.get(event_id)

    async def update_event(self, event_id: str, changes: dict[str, Any]) -> Event:
        check_fields(changes, UPDATABLE_EVENT_FIELDS)
        current = self.events.get(event_id)
        if current is None:
            raise StoreError(f"Event {event_id} not found", event_id)

        updated = Event.model_validate({**current.model_dump(), **changes})
        self.events[event_id] = updated
        return updated

    async def delete_event(self, event_id: str) -> None:
        if self.events.pop(event_id, None) is None:
            raise StoreError(f"Event {event_id} not found", event_id)

    async def list_events(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Event]:
        events = []
        for event in self.events.values():
            if event.owner_id != owner_id:
                continue
            if event.is_recurring:
                if end is not None and event.anchor >= end:
                    continue
            elif start is not None and end is not None and not event.intersects(start, end):
                continue
            events.append(event)
        return sorted(events, key=lambda e: e.start)

    async def list_sourced_events(
        self, subscription_id: Optional[str], owner_id: Optional[str] = None
    ) -> list[Event]:
        return [
            event
            for event in self.events.values()
            if event.source_uid is not None
            and event.source_subscription_id == subscription_id
            and (owner_id is None or event.owner_id == owner_id)
        ]

    async def count_by_subscription(self, subscription_id: str) -> int:
        return sum(1 for e in self.events.values() if e.source_subscription_id == subscription_id)

    async def delete_by_subscription(self, subscription_id: str) -> int:
        doomed = [
            event_id
            for event_id, event in self.events.items()
            if event.source_subscription_id == subscription_id
        ]
        for event_id in doomed:
            del self.events[event_id]
        return len(doomed)

    # Subscriptions

    async def create_subscription(self, data: SubscriptionCreate) -> CalendarSubscription:
        subscription = CalendarSubscription(id=self._new_id(), **data.model_dump())
        self.subscriptions[subscription.id] = subscription
        return subscription

    async def get_subscription(self, subscription_id: str) -> Optional[CalendarSubscription]:
        return self.subscriptions.get(subscription_id)

    async def list_subscriptions(self, owner_id: Optional[str] = None) -> list[CalendarSubscription]:
        subscriptions = [
            s for s in self.subscriptions.values() if owner_id is None or s.owner_id == owner_id
        ]
        return sorted(subscriptions, key=lambda s: s.created_at)

    def _require_subscription(self, subscription_id: str) -> CalendarSubscription:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise StoreError(f"Subscription {subscription_id} not found", subscription_id)
        return subscription

    async def update_subscription(
        self, subscription_id: str, changes: dict[str, Any]
    ) -> CalendarSubscription:
        check_fields(changes, UPDATABLE_SUBSCRIPTION_FIELDS)
        current = self._require_subscription(subscription_id)
        updated = CalendarSubscription.model_validate(
            {**current.model_dump(), **changes, "updated_at": utc_now()}
        )
        self.subscriptions[subscription_id] = updated
        return updated

    async def record_sync(
        self,
        subscription_id: str,
        synced_at: datetime,
        error: Optional[str],
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        update_validators: bool = False,
    ) -> None:
        current = self._require_subscription(subscription_id)
        changes: dict[str, Any] = {"last_sync_at": synced_at, "last_sync_error": error}
        if update_validators:
            changes["etag"] = etag
            changes["last_modified"] = last_modified
        self.subscriptions[subscription_id] = current.model_copy(update=changes)

    async def delete_subscription(self, subscription_id: str) -> None:
        self._require_subscription(subscription_id)
        del self.subscriptions[subscription_id]
