"""iCalendar document parsing into candidate events."""

import hashlib
import logging
from datetime import date, datetime, timedelta
from typing import Any, Optional

import pytz
from icalendar import Calendar, Event as ICalEvent

from ..utils.helpers import date_to_utc, ensure_utc
from .exceptions import InvalidFeedFormat
from .models import DEFAULT_EVENT_TITLE, CandidateEvent

logger = logging.getLogger(__name__)

CALENDAR_MARKER = "BEGIN:VCALENDAR"
INVALID_FORMAT_MESSAGE = "Invalid iCalendar format"

ALL_DAY_DEFAULT_LENGTH = timedelta(hours=24)
TIMED_DEFAULT_LENGTH = timedelta(hours=1)


class ICSParser:
    """Parses iCalendar text into normalized CandidateEvent records."""

    def parse(self, document: str) -> list[CandidateEvent]:
        """Parse an iCalendar document.

        Events without a start are skipped. Individual malformed events are
        skipped with a warning; only a missing or unreadable VCALENDAR
        container fails the whole document.

        Args:
            document: Raw iCalendar text

        Returns:
            Candidate events in document order

        Raises:
            InvalidFeedFormat: If the document is not a readable iCalendar container
        """
        if not document or not document.strip():
            raise InvalidFeedFormat(f"{INVALID_FORMAT_MESSAGE}: empty document")

        if CALENDAR_MARKER not in document.upper():
            raise InvalidFeedFormat(f"{INVALID_FORMAT_MESSAGE}: missing VCALENDAR")

        try:
            components = Calendar.from_ical(document, multiple=True)
        except Exception as e:
            logger.warning(f"Failed to parse iCalendar document: {e}")
            raise InvalidFeedFormat(f"{INVALID_FORMAT_MESSAGE}: {e}") from e

        calendars = [c for c in components if c.name == "VCALENDAR"]
        if not calendars:
            raise InvalidFeedFormat(f"{INVALID_FORMAT_MESSAGE}: missing VCALENDAR")

        candidates: list[CandidateEvent] = []
        skipped = 0
        position = 0

        for calendar in calendars:
            default_timezone = self._get_calendar_property(calendar, "X-WR-TIMEZONE")

            for component in calendar.walk("VEVENT"):
                candidate = self._parse_event_component(component, position, default_timezone)
                position += 1
                if candidate is None:
                    skipped += 1
                    continue
                candidates.append(candidate)

        logger.debug(f"Parsed {len(candidates)} event(s), skipped {skipped}")
        return candidates

    def _parse_event_component(
        self,
        component: ICalEvent,
        position: int,
        default_timezone: Optional[str] = None,
    ) -> Optional[CandidateEvent]:
        """Parse a single VEVENT component.

        Args:
            component: iCalendar VEVENT component
            position: Index of the VEVENT within the document
            default_timezone: Calendar-level X-WR-TIMEZONE for floating times

        Returns:
            CandidateEvent, or None if the event is unusable
        """
        uid_prop = component.get("UID")
        uid = str(uid_prop).strip() if uid_prop else ""

        try:
            dtstart = component.get("DTSTART")
            if dtstart is None:
                logger.warning(f"Event {uid or f'#{position}'} missing DTSTART, skipping")
                return None

            all_day = not isinstance(dtstart.dt, datetime)
            start = self._parse_datetime(dtstart, default_timezone)

            dtend = component.get("DTEND")
            duration = component.get("DURATION")
            if dtend is not None:
                end = self._parse_datetime(dtend, default_timezone)
            elif duration is not None:
                end = start + duration.dt
            else:
                end = start + (ALL_DAY_DEFAULT_LENGTH if all_day else TIMED_DEFAULT_LENGTH)

            if not uid:
                uid = self._synthesize_uid(component, position)

            summary = component.get("SUMMARY")
            title = str(summary).strip() if summary else ""

            return CandidateEvent(
                uid=uid,
                title=title or DEFAULT_EVENT_TITLE,
                start=start,
                end=end,
                description=self._optional_text(component.get("DESCRIPTION")),
                location=self._optional_text(component.get("LOCATION")),
                rrule=self._parse_rrule(component.get("RRULE")),
                all_day=all_day,
                exdates=self._parse_exdates(component.get("EXDATE"), default_timezone),
            )

        except Exception as e:
            logger.warning(f"Skipping malformed event {uid or f'#{position}'}: {e}")
            return None

    def _parse_datetime(self, dt_prop: Any, default_timezone: Optional[str] = None) -> datetime:
        """Parse an iCalendar date or datetime property into UTC.

        Date values map to UTC midnight. Floating times use the calendar's
        default timezone when one is declared, UTC otherwise.
        """
        value = dt_prop.dt if hasattr(dt_prop, "dt") else dt_prop
        return self._to_utc(value, default_timezone)

    def _to_utc(self, value: Any, default_timezone: Optional[str] = None) -> datetime:
        if isinstance(value, datetime):
            if value.tzinfo is None and default_timezone:
                try:
                    return ensure_utc(pytz.timezone(default_timezone).localize(value))
                except pytz.UnknownTimeZoneError:
                    logger.debug(f"Unknown calendar timezone '{default_timezone}', using UTC")
            return ensure_utc(value)
        if isinstance(value, date):
            return date_to_utc(value)
        raise ValueError(f"Unsupported date value: {value!r}")

    def _parse_rrule(self, rrule_prop: Any) -> Optional[str]:
        if rrule_prop is None:
            return None
        if isinstance(rrule_prop, list):
            if len(rrule_prop) > 1:
                logger.debug("Event has multiple RRULE properties, using the first")
            rrule_prop = rrule_prop[0]
        if hasattr(rrule_prop, "to_ical"):
            rule = rrule_prop.to_ical().decode("utf-8")
        else:
            rule = str(rrule_prop)
        return rule or None

    def _parse_exdates(self, exdate_props: Any, default_timezone: Optional[str]) -> list[datetime]:
        if exdate_props is None:
            return []
        if not isinstance(exdate_props, list):
            exdate_props = [exdate_props]

        exdates: list[datetime] = []
        for prop in exdate_props:
            for value in getattr(prop, "dts", []):
                exdates.append(self._to_utc(value.dt, default_timezone))
        return exdates

    @staticmethod
    def _optional_text(prop: Any) -> Optional[str]:
        if prop is None:
            return None
        text = str(prop).strip()
        return text or None

    @staticmethod
    def _synthesize_uid(component: ICalEvent, position: int) -> str:
        """Stable uid for an event without one, derived from its content and position."""
        digest = hashlib.sha256(component.to_ical() + f"#{position}".encode()).hexdigest()
        return f"imported-{digest[:24]}"

    @staticmethod
    def _get_calendar_property(calendar: Calendar, prop_name: str) -> Optional[str]:
        value = calendar.get(prop_name)
        return str(value) if value else None
