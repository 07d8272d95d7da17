"""Shared fixtures for CalendarSync tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from calendarsync.config.settings import CalendarSyncSettings
from calendarsync.ics.models import Event
from calendarsync.store.memory import MemoryStore

UTC = timezone.utc


def _make_event(event_id: str = "evt-1", **overrides) -> Event:
    """Build a stored event with sensible defaults."""
    fields = {
        "id": event_id,
        "owner_id": "owner-1",
        "title": "Team Meeting",
        "start": datetime(2025, 1, 6, 9, 0, tzinfo=UTC),
        "end": datetime(2025, 1, 6, 10, 0, tzinfo=UTC),
    }
    fields.update(overrides)
    return Event(**fields)


def _build_ics(*vevents: str, extra: str = "") -> str:
    """Wrap VEVENT blocks into a VCALENDAR document."""
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//Test//Test//EN"]
    if extra:
        lines.append(extra)
    body = "\r\n".join(lines) + "\r\n"
    for block in vevents:
        body += block.strip().replace("\n", "\r\n") + "\r\n"
    return body + "END:VCALENDAR\r\n"


def _vevent(
    uid: str, summary: str, start: str, end: str = "", extra: str = "", all_day: bool = False
) -> str:
    """Build a VEVENT block from raw property values."""
    value_type = ";VALUE=DATE" if all_day else ""
    lines = ["BEGIN:VEVENT", f"UID:{uid}", f"SUMMARY:{summary}", f"DTSTART{value_type}:{start}"]
    if end:
        lines.append(f"DTEND{value_type}:{end}")
    if extra:
        lines.append(extra)
    lines.append("END:VEVENT")
    return "\n".join(lines)


@pytest.fixture
def test_settings():
    """Create mock settings object with fast test defaults."""
    settings = Mock(spec=CalendarSyncSettings)
    settings.app_name = "CalendarSync Test"
    settings.request_timeout = 5
    settings.max_retries = 2
    settings.retry_backoff_factor = 1.5
    settings.max_feed_bytes = 1024 * 1024
    settings.allow_private_hosts = False
    settings.sync_tick_interval = 300
    settings.sync_cycle_timeout = 5.0
    settings.max_concurrent_syncs = 3
    settings.default_sync_interval_minutes = 60
    settings.default_color = "#3b82f6"
    settings.expansion_cap = 100
    settings.expansion_cache_ttl = 300
    settings.expansion_cache_size = 64
    settings.log_level = "ERROR"
    settings.log_file = None
    return settings


@pytest.fixture
def memory_store():
    """Create an empty in-memory store."""
    return MemoryStore()


@pytest.fixture
def fixed_now():
    """A fixed 'current' time used by clock-injected components."""
    return datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def weekly_master():
    """Recurring weekly master event on Mondays."""
    return _make_event(
        "weekly-1",
        title="Weekly Sync",
        rrule="FREQ=WEEKLY;BYDAY=MO",
        start=datetime(2025, 1, 6, 9, 0, tzinfo=UTC),
        end=datetime(2025, 1, 6, 9, 30, tzinfo=UTC),
    )


@pytest.fixture
def sample_ics():
    """Feed with a plain event, a recurring event and an all-day event."""
    return _build_ics(
        _vevent("a@test", "Plain Event", "20250110T150000Z", "20250110T160000Z"),
        _vevent(
            "b@test",
            "Daily Standup",
            "20250106T090000Z",
            "20250106T091500Z",
            extra="RRULE:FREQ=DAILY;COUNT=5",
        ),
        _vevent("c@test", "Holiday", "20250120", "20250121", all_day=True),
    )


@pytest.fixture
def one_week():
    """Window covering the week of 2025-01-06."""
    start = datetime(2025, 1, 6, tzinfo=UTC)
    return start, start + timedelta(days=7)


@pytest.fixture
def make_event():
    """Factory for stored events: make_event(event_id, **overrides)."""
    return _make_event


@pytest.fixture
def build_ics():
    """Factory wrapping VEVENT blocks into a VCALENDAR document."""
    return _build_ics


@pytest.fixture
def vevent():
    """Factory for VEVENT blocks: vevent(uid, summary, start, end, extra, all_day)."""
    return _vevent
