"""Recurrence rule interpretation backed by python-dateutil."""

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional, Union

from dateutil.rrule import rrule, rruleset, rrulestr

from ..utils.helpers import ensure_utc
from .exceptions import InvalidRecurrenceRule

logger = logging.getLogger(__name__)

DEFAULT_OCCURRENCE_CAP = 100
# Instances a rule may produce before the window starts
DEFAULT_ITERATION_LIMIT = 50_000
RECURRING_EVENT_FALLBACK = "Recurring event"

# Fixed-length steps; the anchor of an uncounted rule can jump ahead by whole steps
SUB_DAILY_STEPS = {
    "SECONDLY": timedelta(seconds=1),
    "MINUTELY": timedelta(minutes=1),
    "HOURLY": timedelta(hours=1),
}

_PREFIX_RE = re.compile(r"^\s*RRULE:", re.IGNORECASE)
_UNTIL_RE = re.compile(r"UNTIL=(\d{8})(T\d{6})?(Z)?", re.IGNORECASE)
_BYDAY_RE = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")

# Errors dateutil raises for malformed rule text
_RULE_LIBRARY_ERRORS = (ValueError, TypeError, KeyError, AttributeError, OverflowError, IndexError)

FREQUENCY_UNITS = {
    "SECONDLY": "second",
    "MINUTELY": "minute",
    "HOURLY": "hour",
    "DAILY": "day",
    "WEEKLY": "week",
    "MONTHLY": "month",
    "YEARLY": "year",
}

WEEKDAY_NAMES = {
    "MO": "Monday",
    "TU": "Tuesday",
    "WE": "Wednesday",
    "TH": "Thursday",
    "FR": "Friday",
    "SA": "Saturday",
    "SU": "Sunday",
}

WORKDAYS = {"MO", "TU", "WE", "TH", "FR"}

ORDINAL_WORDS = {
    1: "first",
    2: "second",
    3: "third",
    4: "fourth",
    5: "fifth",
    -1: "last",
    -2: "second to last",
}

MONTH_NAMES = [
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
]

RuleObject = Union[rrule, rruleset]


def strip_rule_prefix(rule: str) -> str:
    """Remove a leading ``RRULE:`` property name (any case) and surrounding whitespace."""
    return _PREFIX_RE.sub("", rule, count=1).strip()


def _normalize_until(body: str) -> str:
    """Rewrite UNTIL so it compares against a naive UTC anchor.

    A UTC value loses its ``Z``; a date-only value covers its whole day.
    """

    def replace(match: "re.Match[str]") -> str:
        day, time_part, _zulu = match.groups()
        if time_part is None:
            return f"UNTIL={day}T235959"
        return f"UNTIL={day}{time_part.upper()}"

    return _UNTIL_RE.sub(replace, body)


def parse_rule_parts(rule: str) -> dict[str, str]:
    """Split a rule into its upper-cased ``NAME=value`` parts.

    Args:
        rule: Rule text, with or without the ``RRULE:`` prefix

    Returns:
        Mapping of part name to raw value

    Raises:
        InvalidRecurrenceRule: If the rule is empty or a part lacks ``=``
    """
    body = strip_rule_prefix(rule or "")
    if not body:
        raise InvalidRecurrenceRule("Empty recurrence rule", rule)

    parts: dict[str, str] = {}
    for part in body.split(";"):
        if not part.strip():
            continue
        if "=" not in part:
            raise InvalidRecurrenceRule(f"Invalid recurrence rule part: {part}", rule)
        key, value = part.split("=", 1)
        parts[key.strip().upper()] = value.strip().upper()

    if "FREQ" not in parts:
        raise InvalidRecurrenceRule("Recurrence rule missing required FREQ part", rule)

    return parts


class RecurrenceRuleEngine(ABC):
    """Turns a recurrence rule plus an anchor into occurrence start times."""

    @abstractmethod
    def occurrences_between(
        self,
        rule: str,
        anchor: datetime,
        window_start: datetime,
        window_end: datetime,
        cap: int = DEFAULT_OCCURRENCE_CAP,
    ) -> list[datetime]:
        """Occurrence starts in ``[window_start, window_end)``, ascending, at most ``cap``.

        Raises:
            InvalidRecurrenceRule: If the rule cannot be parsed
        """

    @abstractmethod
    def next_after(self, rule: str, anchor: datetime, after: datetime) -> Optional[datetime]:
        """First occurrence start at or after ``after``, or None when the series has ended.

        Raises:
            InvalidRecurrenceRule: If the rule cannot be parsed
        """

    def validate(self, rule: str) -> None:
        """Raise InvalidRecurrenceRule if ``rule`` cannot be interpreted."""
        anchor = datetime(2000, 1, 1, tzinfo=timezone.utc)
        self.next_after(rule, anchor, anchor)


class DateutilRuleEngine(RecurrenceRuleEngine):
    """Rule engine built on ``dateutil.rrule.rrulestr``.

    All arithmetic happens on naive UTC datetimes; results are returned as
    timezone-aware UTC.

    Work before the window is bounded: sub-daily rules without COUNT start
    from the last whole step before the window, and any other rule may yield
    at most ``iteration_limit`` instances before reaching it.
    """

    def __init__(self, iteration_limit: int = DEFAULT_ITERATION_LIMIT):
        self.iteration_limit = iteration_limit

    def _fast_forward(self, rule: str, anchor: datetime, lower: datetime) -> datetime:
        """Move a sub-daily anchor forward onto the last step at or before ``lower``."""
        if anchor >= lower:
            return anchor

        parts = parse_rule_parts(rule)
        step = SUB_DAILY_STEPS.get(parts["FREQ"])
        if step is None or "COUNT" in parts:
            return anchor

        try:
            interval = int(parts.get("INTERVAL", "1"))
        except ValueError as e:
            raise InvalidRecurrenceRule(f"Invalid INTERVAL in rule '{rule}'", rule) from e
        if interval < 1:
            return anchor

        step *= interval
        return anchor + ((lower - anchor) // step) * step

    def _walk(self, rule: str, parsed: RuleObject, lower: datetime) -> Iterator[datetime]:
        """Yield naive instances at or after ``lower`` within the iteration limit."""
        skipped = 0
        try:
            for occurrence in parsed:
                if occurrence >= lower:
                    yield occurrence
                    continue
                skipped += 1
                if skipped > self.iteration_limit:
                    raise InvalidRecurrenceRule(
                        f"Recurrence rule '{rule}' exceeds {self.iteration_limit} "
                        "instances before the requested window",
                        rule,
                    )
        except _RULE_LIBRARY_ERRORS as e:
            raise InvalidRecurrenceRule(f"Invalid recurrence rule '{rule}': {e}", rule) from e

    def _build(self, rule: str, anchor: datetime) -> RuleObject:
        if not isinstance(rule, str):
            raise InvalidRecurrenceRule(f"Recurrence rule must be text, got {type(rule).__name__}")

        body = strip_rule_prefix(rule)
        if not body:
            raise InvalidRecurrenceRule("Empty recurrence rule", rule)

        naive_anchor = ensure_utc(anchor).replace(tzinfo=None)
        try:
            return rrulestr(_normalize_until(body), dtstart=naive_anchor)
        except _RULE_LIBRARY_ERRORS as e:
            raise InvalidRecurrenceRule(f"Invalid recurrence rule '{rule}': {e}", rule) from e

    @staticmethod
    def _naive(dt: datetime) -> datetime:
        return ensure_utc(dt).replace(tzinfo=None)

    def occurrences_between(
        self,
        rule: str,
        anchor: datetime,
        window_start: datetime,
        window_end: datetime,
        cap: int = DEFAULT_OCCURRENCE_CAP,
    ) -> list[datetime]:
        """Expand ``rule`` anchored at ``anchor`` within a half-open window.

        Args:
            rule: Rule text, with or without the ``RRULE:`` prefix
            anchor: Series start (DTSTART)
            window_start: Inclusive lower bound
            window_end: Exclusive upper bound
            cap: Maximum number of starts returned

        Returns:
            Strictly increasing list of UTC occurrence starts

        Raises:
            InvalidRecurrenceRule: If the rule cannot be parsed, or reaching the
                window takes more than ``iteration_limit`` instances
        """
        parsed = self._build(rule, anchor)
        if cap <= 0:
            return []

        lower = self._naive(window_start)
        upper = self._naive(window_end)
        if lower >= upper:
            return []

        start = self._fast_forward(rule, self._naive(anchor), lower)
        if start != self._naive(anchor):
            parsed = self._build(rule, start)

        occurrences: list[datetime] = []
        for occurrence in self._walk(rule, parsed, lower):
            if occurrence >= upper:
                break
            occurrences.append(occurrence.replace(tzinfo=timezone.utc))
            if len(occurrences) >= cap:
                break

        logger.debug(f"Rule '{rule}' produced {len(occurrences)} occurrence(s) in window")
        return occurrences

    def next_after(self, rule: str, anchor: datetime, after: datetime) -> Optional[datetime]:
        parsed = self._build(rule, anchor)
        lower = self._naive(after)

        start = self._fast_forward(rule, self._naive(anchor), lower)
        if start != self._naive(anchor):
            parsed = self._build(rule, start)

        occurrence = next(self._walk(rule, parsed, lower), None)
        return occurrence.replace(tzinfo=timezone.utc) if occurrence else None


def _join_words(items: list[str]) -> str:
    if len(items) == 1:
        return items[0]
    return ", ".join(items[:-1]) + " and " + items[-1]


def _day_ordinal(value: int) -> str:
    if value == -1:
        return "last day"
    if value < 0:
        return f"{_day_ordinal(-value)} to last day"
    if 10 <= value % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(value % 10, "th")
    return f"{value}{suffix}"


def _describe_weekday(token: str) -> str:
    match = _BYDAY_RE.match(token)
    if not match:
        raise InvalidRecurrenceRule(f"Invalid BYDAY value: {token}")
    ordinal, day = match.groups()
    name = WEEKDAY_NAMES[day]
    if ordinal is None:
        return name
    position = int(ordinal)
    word = ORDINAL_WORDS.get(position, _day_ordinal(position).replace(" day", ""))
    return f"the {word} {name}"


def describe_rule(rule: Optional[str], engine: Optional[RecurrenceRuleEngine] = None) -> str:
    """Render a recurrence rule as English text.

    Never raises: rules that cannot be parsed yield ``"Recurring event"``.

    Args:
        rule: Rule text, with or without the ``RRULE:`` prefix
        engine: Engine used to validate the rule (dateutil by default)

    Returns:
        Text such as ``"Every 2 weeks on Monday and Wednesday for 10 times"``
    """
    if not rule:
        return RECURRING_EVENT_FALLBACK

    try:
        (engine or DateutilRuleEngine()).validate(rule)
        parts = parse_rule_parts(rule)
        unit = FREQUENCY_UNITS[parts["FREQ"]]
        interval = int(parts.get("INTERVAL", "1"))
        days = [token.strip() for token in parts.get("BYDAY", "").split(",") if token.strip()]

        if parts["FREQ"] == "WEEKLY" and interval == 1 and set(days) == WORKDAYS and len(days) == 5:
            text = "Every weekday"
        else:
            text = f"Every {unit}" if interval == 1 else f"Every {interval} {unit}s"
            if days:
                text += " on " + _join_words([_describe_weekday(day) for day in days])

        if "BYMONTHDAY" in parts:
            month_days = [_day_ordinal(int(v)) for v in parts["BYMONTHDAY"].split(",") if v]
            text += " on the " + _join_words(month_days)

        if "BYMONTH" in parts:
            months = [MONTH_NAMES[int(v) - 1] for v in parts["BYMONTH"].split(",") if v]
            text += " in " + _join_words(months)

        if "COUNT" in parts:
            count = int(parts["COUNT"])
            text += " once" if count == 1 else f" for {count} times"
        elif "UNTIL" in parts:
            until = datetime.strptime(parts["UNTIL"][:8], "%Y%m%d")
            text += f" until {MONTH_NAMES[until.month - 1]} {until.day}, {until.year}"

        return text

    except (InvalidRecurrenceRule, KeyError, ValueError, IndexError) as e:
        logger.debug(f"Could not describe rule '{rule}': {e}")
        return RECURRING_EVENT_FALLBACK
