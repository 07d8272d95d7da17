"""Data models for calendar events and feed retrieval."""

from datetime import date, datetime, timedelta
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from ..utils.helpers import ensure_utc, utc_now

DEFAULT_EVENT_COLOR = "#3b82f6"
DEFAULT_EVENT_TITLE = "Untitled Event"


def _normalize_timestamp(value: datetime) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


class EventData(BaseModel):
    """A stored calendar event before it has been assigned an id.

    Timestamps are normalized to timezone-aware UTC. A recurring master carries
    ``rrule``; its ``start``/``end`` bound the first occurrence.
    """

    owner_id: str
    title: str = DEFAULT_EVENT_TITLE
    color: str = DEFAULT_EVENT_COLOR
    description: Optional[str] = None
    location: Optional[str] = None
    start: datetime
    end: datetime
    all_day: bool = False

    # Recurrence
    rrule: Optional[str] = None
    dtstart: Optional[datetime] = None
    duration: Optional[int] = Field(default=None, ge=0, description="Milliseconds")
    exdates: list[datetime] = Field(default_factory=list)

    # Provenance
    source_subscription_id: Optional[str] = None
    source_uid: Optional[str] = None

    @field_validator("start", "end", "dtstart")
    @classmethod
    def _utc_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _normalize_timestamp(value) if value is not None else None

    @field_validator("exdates")
    @classmethod
    def _utc_exdates(cls, value: list[datetime]) -> list[datetime]:
        return [_normalize_timestamp(dt) for dt in value]

    @field_validator("rrule")
    @classmethod
    def _blank_rule_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def is_recurring(self) -> bool:
        """Check if this event is a recurring master."""
        return self.rrule is not None

    @property
    def anchor(self) -> datetime:
        """Start of the recurrence series."""
        return self.dtstart or self.start

    @property
    def occurrence_duration(self) -> timedelta:
        """Length of each occurrence, falling back to ``end - start``."""
        if self.duration is not None:
            return timedelta(milliseconds=self.duration)
        return self.end - self.start

    def intersects(self, window_start: datetime, window_end: datetime) -> bool:
        """Check if the event's own [start, end] span touches the window."""
        return self.start < window_end and self.end >= window_start

    @field_serializer("start", "end", "dtstart", when_used="json")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @field_serializer("exdates", when_used="json")
    def serialize_exdates(self, value: list[datetime]) -> list[str]:
        return [dt.isoformat() for dt in value]


class Event(EventData):
    """A persisted event (plain event or recurring master)."""

    id: str


class Occurrence(BaseModel):
    """One concrete occurrence of a recurring master, computed for display.

    Never persisted. Carries the master's fields except its recurrence fields.
    """

    id: str
    owner_id: str
    title: str
    color: str
    description: Optional[str] = None
    location: Optional[str] = None
    start: datetime
    end: datetime
    all_day: bool = False
    source_subscription_id: Optional[str] = None
    source_uid: Optional[str] = None

    is_recurring_instance: bool = True
    original_event_id: str
    recurrence_index: int = Field(..., ge=0)

    @classmethod
    def from_master(cls, master: Event, start: datetime, index: int) -> "Occurrence":
        """Build an occurrence of ``master`` starting at ``start``.

        Args:
            master: Recurring master event
            start: Occurrence start time
            index: Position among the occurrences emitted for one expansion

        Returns:
            Occurrence instance
        """
        return cls(
            id=f"{master.id}_occ_{index}",
            owner_id=master.owner_id,
            title=master.title,
            color=master.color,
            description=master.description,
            location=master.location,
            start=start,
            end=start + master.occurrence_duration,
            all_day=master.all_day,
            source_subscription_id=master.source_subscription_id,
            source_uid=master.source_uid,
            original_event_id=master.id,
            recurrence_index=index,
        )

    @field_serializer("start", "end", when_used="json")
    def serialize_datetime(self, value: datetime) -> str:
        return value.isoformat()


CalendarItem = Union[Event, Occurrence]


class CandidateEvent(BaseModel):
    """An event read from an iCalendar document, not yet reconciled."""

    uid: str
    title: str = DEFAULT_EVENT_TITLE
    start: datetime
    end: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    rrule: Optional[str] = None
    all_day: bool = False
    exdates: list[datetime] = Field(default_factory=list)

    @field_validator("start", "end")
    @classmethod
    def _utc_timestamps(cls, value: datetime) -> datetime:
        return _normalize_timestamp(value)

    @field_validator("exdates")
    @classmethod
    def _utc_exdates(cls, value: list[datetime]) -> list[datetime]:
        return [_normalize_timestamp(dt) for dt in value]

    def event_fields(self) -> dict:
        """Fields the reconciler copies onto a stored event."""
        return {
            "title": self.title,
            "start": self.start,
            "end": self.end,
            "description": self.description,
            "location": self.location,
            "rrule": self.rrule,
            "all_day": self.all_day,
            "exdates": list(self.exdates),
        }


class NotModified(BaseModel):
    """Fetch outcome when the server reports the feed unchanged (HTTP 304)."""

    etag: Optional[str] = None
    last_modified: Optional[str] = None
    fetched_at: datetime = Field(default_factory=utc_now)


class Fetched(BaseModel):
    """Fetch outcome carrying a fresh feed body."""

    body: str
    status_code: int = 200
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    content_type: Optional[str] = None
    fetched_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


FetchResult = Union[NotModified, Fetched]


def date_range_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """Convert an inclusive date range into a half-open UTC window."""
    window_start = datetime(start.year, start.month, start.day)
    window_end = datetime(end.year, end.month, end.day) + timedelta(days=1)
    return ensure_utc(window_start), ensure_utc(window_end)
