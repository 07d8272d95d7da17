"""Calendar read path, manual import and export."""

import logging
from datetime import datetime
from typing import Optional

from .ics.expander import OccurrenceExpander
from .ics.models import DEFAULT_EVENT_COLOR, CalendarItem, Event
from .ics.parser import ICSParser
from .ics.writer import ICSWriter
from .sources.models import ImportResult
from .sources.reconciler import Reconciler, index_by_uid
from .store.base import EventStore, StoreError

logger = logging.getLogger(__name__)


class CalendarService:
    """Owner-facing calendar operations over an event store."""

    def __init__(
        self,
        events: EventStore,
        expander: Optional[OccurrenceExpander] = None,
        parser: Optional[ICSParser] = None,
        writer: Optional[ICSWriter] = None,
        reconciler: Optional[Reconciler] = None,
    ):
        self.events = events
        self.expander = expander or OccurrenceExpander()
        self.parser = parser or ICSParser()
        self.writer = writer or ICSWriter()
        self.reconciler = reconciler or Reconciler(events)

    async def get_calendar_view(
        self, owner_id: str, start: datetime, end: datetime
    ) -> list[CalendarItem]:
        """Events and expanded occurrences an owner sees in ``[start, end)``.

        Args:
            owner_id: Calendar owner
            start: Window start
            end: Window end

        Returns:
            Plain events and occurrences ordered by start
        """
        masters = await self.events.list_events(owner_id, start, end)
        items = self.expander.expand(masters, start, end)
        return sorted(items, key=lambda item: item.start)

    async def import_events(
        self,
        document: str,
        owner_id: str,
        subscription_id: Optional[str] = None,
        color: str = DEFAULT_EVENT_COLOR,
    ) -> ImportResult:
        """Create or update events from an iCalendar document. Nothing is deleted.

        Events are matched by (subscription, uid), so importing the same
        document twice leaves the calendar unchanged.

        Args:
            document: iCalendar text
            owner_id: Owner of the imported events
            subscription_id: Subscription to attribute the events to, if any
            color: Color for newly created events

        Returns:
            Counts of imported, updated and unchanged events plus per-row errors

        Raises:
            InvalidFeedFormat: If the document is not a readable iCalendar container
        """
        candidates = self.parser.parse(document)
        previous = await self.events.list_sourced_events(subscription_id, owner_id=owner_id)

        reconciled = await self.reconciler.reconcile(
            subscription_id,
            index_by_uid(previous),
            candidates,
            owner_id=owner_id,
            color=color,
            prune=False,
        )

        logger.info(
            f"Imported {reconciled.added} new and {reconciled.updated} updated event(s) "
            f"for owner {owner_id}"
        )
        return ImportResult(
            imported=reconciled.added,
            updated=reconciled.updated,
            unchanged=reconciled.unchanged,
            errors=reconciled.errors,
        )

    async def export_events(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        calendar_name: str = "CalendarSync",
    ) -> str:
        """Export an owner's events as an iCalendar document.

        Recurring masters are exported with their rule, unexpanded.
        """
        events = await self.events.list_events(owner_id)
        return self.writer.serialize(events, calendar_name=calendar_name, start=start, end=end)

    async def event_invitation(self, event_id: str) -> str:
        """Single-event REQUEST document for an invitation email.

        Raises:
            StoreError: If the event does not exist
        """
        event: Optional[Event] = await self.events.get_event(event_id)
        if event is None:
            raise StoreError(f"Event {event_id} not found", event_id)
        return self.writer.invitation(event)
