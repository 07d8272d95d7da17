"""iCalendar feed handling: fetching, parsing, writing and recurrence expansion."""

from .exceptions import FeedUnreachable, ICSError, InvalidFeedFormat, InvalidRecurrenceRule
from .expander import ExpansionCache, NullExpansionCache, OccurrenceExpander
from .fetcher import ICSFetcher
from .models import (
    CandidateEvent,
    Event,
    EventData,
    Fetched,
    FetchResult,
    NotModified,
    Occurrence,
)
from .parser import ICSParser
from .recurrence import DateutilRuleEngine, RecurrenceRuleEngine, describe_rule
from .writer import ICSWriter

__all__ = [
    "CandidateEvent",
    "DateutilRuleEngine",
    "Event",
    "EventData",
    "ExpansionCache",
    "FeedUnreachable",
    "FetchResult",
    "Fetched",
    "ICSError",
    "ICSFetcher",
    "ICSParser",
    "ICSWriter",
    "InvalidFeedFormat",
    "InvalidRecurrenceRule",
    "NotModified",
    "NullExpansionCache",
    "Occurrence",
    "OccurrenceExpander",
    "RecurrenceRuleEngine",
    "describe_rule",
]
