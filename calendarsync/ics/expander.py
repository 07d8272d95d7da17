"""Expansion of stored recurring masters into displayable occurrences."""

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Hashable, Iterable, Optional

from cachetools import TTLCache

from ..utils.helpers import date_to_utc
from .exceptions import InvalidRecurrenceRule
from .models import CalendarItem, Event, Occurrence
from .recurrence import DEFAULT_OCCURRENCE_CAP, DateutilRuleEngine, RecurrenceRuleEngine

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Expansion cache statistics."""

    hits: int = 0
    misses: int = 0
    stores: int = 0

    @property
    def hit_rate_percent(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total else 0.0


class ExpansionCache:
    """Bounded, time-limited cache of per-master expansion results.

    Entries expire ``ttl`` seconds after being stored; the least recently used
    entry is evicted once ``max_size`` is reached.
    """

    def __init__(
        self,
        max_size: int = 512,
        ttl: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize expansion cache.

        Args:
            max_size: Maximum number of cached expansions
            ttl: Time-to-live for each entry in seconds
            clock: Monotonic clock returning seconds
        """
        self.max_size = max_size
        self.ttl = ttl
        self._entries: TTLCache = TTLCache(maxsize=max(max_size, 1), ttl=ttl, timer=clock)
        self.stats = CacheStats()

        logger.debug(f"Expansion cache initialized (max_size={max_size}, ttl={ttl}s)")

    def get(self, key: Hashable) -> Optional[list[Occurrence]]:
        cached = self._entries.get(key)
        if cached is None:
            self.stats.misses += 1
            return None
        self.stats.hits += 1
        return list(cached)

    def set(self, key: Hashable, occurrences: list[Occurrence]) -> None:
        if self.max_size <= 0:
            return
        self._entries[key] = tuple(occurrences)
        self.stats.stores += 1

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class NullExpansionCache(ExpansionCache):
    """Cache that never stores anything."""

    def __init__(self) -> None:
        super().__init__(max_size=0, ttl=0)

    def get(self, key: Hashable) -> Optional[list[Occurrence]]:
        self.stats.misses += 1
        return None

    def set(self, key: Hashable, occurrences: list[Occurrence]) -> None:
        return None


class OccurrenceExpander:
    """Expands recurring masters into occurrences intersecting a time window."""

    def __init__(
        self,
        engine: Optional[RecurrenceRuleEngine] = None,
        cache: Optional[ExpansionCache] = None,
        cap: int = DEFAULT_OCCURRENCE_CAP,
    ):
        """Initialize expander.

        Args:
            engine: Recurrence rule engine (dateutil by default)
            cache: Expansion cache; a NullExpansionCache disables caching
            cap: Maximum occurrences emitted per master per call
        """
        self.engine = engine or DateutilRuleEngine()
        self.cache = cache if cache is not None else NullExpansionCache()
        self.cap = cap

    @staticmethod
    def _cache_key(master: Event, window_start: datetime, window_end: datetime) -> Hashable:
        # The serialized master covers rule, anchor, duration, exdates and display fields
        return (master.id, window_start, window_end, master.model_dump_json())

    def expand(
        self,
        masters: Iterable[Event],
        window_start: datetime,
        window_end: datetime,
    ) -> list[CalendarItem]:
        """Expand events into what should be displayed in ``[window_start, window_end)``.

        Non-recurring events pass through when they touch the window. Recurring
        masters are replaced by their occurrences; a master whose rule cannot be
        parsed is emitted once, as a plain event.

        Args:
            masters: Stored events (plain and recurring)
            window_start: Window start
            window_end: Window end

        Returns:
            Events and occurrences in input order
        """
        items: list[CalendarItem] = []

        for event in masters:
            if not event.is_recurring:
                if event.intersects(window_start, window_end):
                    items.append(event)
                continue

            try:
                items.extend(self.expand_master(event, window_start, window_end))
            except InvalidRecurrenceRule as e:
                logger.warning(
                    f"Invalid recurrence rule on event {event.id}, showing it unexpanded: {e}"
                )
                items.append(event)

        return items

    def expand_master(
        self, master: Event, window_start: datetime, window_end: datetime
    ) -> list[Occurrence]:
        """Expand one recurring master.

        Raises:
            InvalidRecurrenceRule: If the master's rule cannot be parsed
        """
        if master.rrule is None:
            return []

        key = self._cache_key(master, window_start, window_end)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        duration = master.occurrence_duration
        starts = self.engine.occurrences_between(
            master.rrule,
            master.anchor,
            window_start - duration,
            window_end,
            cap=self.cap,
        )

        excluded = set(master.exdates)
        occurrences = [
            Occurrence.from_master(master, start, index)
            for index, start in enumerate(s for s in starts if s not in excluded)
        ]

        self.cache.set(key, occurrences)
        logger.debug(f"Expanded event {master.id} into {len(occurrences)} occurrence(s)")
        return occurrences

    def next_occurrence(self, event: Event, after: datetime) -> Optional[datetime]:
        """Start of the event's next occurrence at or after ``after``.

        Excluded dates are skipped. Plain events return their own start when it
        has not passed yet.
        """
        if not event.is_recurring:
            return event.start if event.start >= after else None

        excluded = set(event.exdates)
        candidate = after
        while True:
            start = self.engine.next_after(event.rrule, event.anchor, candidate)
            if start is None or start not in excluded:
                return start
            candidate = start + timedelta(microseconds=1)

    def occurs_on(self, event: Event, day: date) -> bool:
        """Check whether any occurrence of the event falls on a UTC calendar day."""
        day_start = date_to_utc(day)
        day_end = day_start + timedelta(days=1)

        if not event.is_recurring:
            return event.intersects(day_start, day_end)

        try:
            return bool(self.expand_master(event, day_start, day_end))
        except InvalidRecurrenceRule:
            return event.intersects(day_start, day_end)
