"""iCalendar document generation from stored events."""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional

from icalendar import Calendar, Event as ICalEvent, vRecur

from ..utils.helpers import ensure_utc, utc_now
from .models import Event
from .recurrence import strip_rule_prefix

logger = logging.getLogger(__name__)

PRODID = "-//CalendarSync//Calendar Feed//EN"
DEFAULT_CALENDAR_NAME = "CalendarSync"
UID_DOMAIN = "calendarsync"


def event_uid(event: Event) -> str:
    """UID written for an event: its feed uid, or one derived from its local id."""
    return event.source_uid or f"calendarsync-{event.id}@{UID_DOMAIN}"


class ICSWriter:
    """Serializes stored events into iCalendar documents."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        """Initialize writer.

        Args:
            clock: Source of DTSTAMP values
        """
        self.clock = clock

    def serialize(
        self,
        events: Iterable[Event],
        calendar_name: str = DEFAULT_CALENDAR_NAME,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> str:
        """Serialize events into one VCALENDAR document.

        Recurring masters are written once with their RRULE, not expanded.

        Args:
            events: Events to export
            calendar_name: Value for X-WR-CALNAME
            start: Only export events ending at or after this time
            end: Only export events starting before this time

        Returns:
            iCalendar text
        """
        calendar = self._new_calendar(method="PUBLISH")
        calendar.add("x-wr-calname", calendar_name)

        stamp = ensure_utc(self.clock())
        count = 0
        for event in events:
            if not self._in_range(event, start, end):
                continue
            calendar.add_component(self._build_event(event, stamp))
            count += 1

        logger.debug(f"Serialized {count} event(s) into calendar '{calendar_name}'")
        return calendar.to_ical().decode("utf-8")

    def invitation(self, event: Event) -> str:
        """Build a single-event REQUEST document suitable for an email invitation.

        Args:
            event: Event to invite attendees to

        Returns:
            iCalendar text
        """
        calendar = self._new_calendar(method="REQUEST")

        component = self._build_event(event, ensure_utc(self.clock()))
        component.add("sequence", 0)
        component.add("status", "CONFIRMED")
        calendar.add_component(component)

        return calendar.to_ical().decode("utf-8")

    @staticmethod
    def _new_calendar(method: str) -> Calendar:
        calendar = Calendar()
        calendar.add("prodid", PRODID)
        calendar.add("version", "2.0")
        calendar.add("calscale", "GREGORIAN")
        calendar.add("method", method)
        return calendar

    @staticmethod
    def _in_range(event: Event, start: Optional[datetime], end: Optional[datetime]) -> bool:
        # Masters are always exported when a range is given; their series may reach it
        if event.is_recurring:
            return end is None or event.anchor < end
        if start is not None and event.end < start:
            return False
        if end is not None and event.start >= end:
            return False
        return True

    def _build_event(self, event: Event, stamp: datetime) -> ICalEvent:
        component = ICalEvent()
        component.add("uid", event_uid(event))
        component.add("dtstamp", stamp)

        if event.all_day:
            component.add("dtstart", self._as_date(event.start))
            end_date = self._as_date(event.end)
            if end_date <= self._as_date(event.start):
                end_date = self._as_date(event.start) + timedelta(days=1)
            component.add("dtend", end_date)
        else:
            component.add("dtstart", ensure_utc(event.start))
            component.add("dtend", ensure_utc(event.end))

        component.add("summary", event.title)
        if event.description:
            component.add("description", event.description)
        if event.location:
            component.add("location", event.location)

        if event.rrule:
            try:
                component.add("rrule", vRecur.from_ical(strip_rule_prefix(event.rrule)))
            except ValueError as e:
                logger.warning(f"Omitting unreadable recurrence rule on event {event.id}: {e}")

        if event.exdates:
            if event.all_day:
                component.add("exdate", [self._as_date(dt) for dt in event.exdates])
            else:
                component.add("exdate", [ensure_utc(dt) for dt in event.exdates])

        return component

    @staticmethod
    def _as_date(dt: datetime) -> date:
        return ensure_utc(dt).date()
