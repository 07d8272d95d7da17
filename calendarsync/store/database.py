"""SQLite persistence for events and subscriptions."""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import aiosqlite

from ..ics.models import Event, EventData
from ..sources.models import CalendarSubscription, SubscriptionCreate
from ..utils.helpers import parse_iso_datetime, utc_now
from .base import (
    UPDATABLE_EVENT_FIELDS,
    UPDATABLE_SUBSCRIPTION_FIELDS,
    EventStore,
    StoreError,
    SubscriptionStore,
    check_fields,
)

logger = logging.getLogger(__name__)

EVENT_FIELDS = (
    "id",
    "owner_id",
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
    "source_subscription_id",
    "source_uid",
)

# Model field -> column, where they differ
EVENT_FIELD_COLUMNS = {
    "start": "start_at",
    "end": "end_at",
    "duration": "duration_ms",
}

EVENT_COLUMNS = tuple(EVENT_FIELD_COLUMNS.get(field, field) for field in EVENT_FIELDS)

SUBSCRIPTION_COLUMNS = (
    "id",
    "owner_id",
    "name",
    "url",
    "color",
    "auto_sync",
    "sync_interval_minutes",
    "last_sync_at",
    "last_sync_error",
    "etag",
    "last_modified",
    "created_at",
    "updated_at",
)


def _to_db(value: Any) -> Any:
    """Convert a model value into a SQLite column value."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, list):
        return json.dumps([_to_db(v) for v in value])
    return value


def _event_from_row(row: aiosqlite.Row) -> Event:
    return Event(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"],
        color=row["color"],
        description=row["description"],
        location=row["location"],
        start=parse_iso_datetime(row["start_at"]),
        end=parse_iso_datetime(row["end_at"]),
        all_day=bool(row["all_day"]),
        rrule=row["rrule"],
        dtstart=parse_iso_datetime(row["dtstart"]),
        duration=row["duration_ms"],
        exdates=[parse_iso_datetime(v) for v in json.loads(row["exdates"] or "[]")],
        source_subscription_id=row["source_subscription_id"],
        source_uid=row["source_uid"],
    )


def _subscription_from_row(row: aiosqlite.Row) -> CalendarSubscription:
    return CalendarSubscription(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        url=row["url"],
        color=row["color"],
        auto_sync=bool(row["auto_sync"]),
        sync_interval_minutes=row["sync_interval_minutes"],
        last_sync_at=parse_iso_datetime(row["last_sync_at"]),
        last_sync_error=row["last_sync_error"],
        etag=row["etag"],
        last_modified=row["last_modified"],
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


class SQLiteStore(EventStore, SubscriptionStore):
    """Event and subscription store backed by an SQLite file."""

    def __init__(self, database_path: Union[Path, str]):
        """Initialize the store. The schema is created on first use.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._initialization_lock: Optional[asyncio.Lock] = None

        logger.info(f"SQLite store initialized (lazy): {self.database_path}")

    async def _ensure_initialized(self) -> None:
        """Ensure database schema exists before operations."""
        if self._initialized:
            return

        if self._initialization_lock is None:
            self._initialization_lock = asyncio.Lock()

        async with self._initialization_lock:
            if self._initialized:
                return
            await self._initialize_database()
            self._initialized = True

    async def _initialize_database(self) -> None:
        async with aiosqlite.connect(str(self.database_path)) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    url TEXT NOT NULL,
                    color TEXT NOT NULL,
                    auto_sync INTEGER NOT NULL DEFAULT 1,
                    sync_interval_minutes INTEGER NOT NULL CHECK (sync_interval_minutes > 0),
                    last_sync_at TEXT,
                    last_sync_error TEXT,
                    etag TEXT,
                    last_modified TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    color TEXT NOT NULL,
                    description TEXT,
                    location TEXT,
                    start_at TEXT NOT NULL,
                    end_at TEXT NOT NULL,
                    all_day INTEGER NOT NULL DEFAULT 0,
                    rrule TEXT,
                    dtstart TEXT,
                    duration_ms INTEGER,
                    exdates TEXT NOT NULL DEFAULT '[]',
                    source_subscription_id TEXT,
                    source_uid TEXT
                )
            """
            )

            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_owner_start ON events(owner_id, start_at)"
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_events_identity
                ON events(source_subscription_id, source_uid)
            """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_owner ON subscriptions(owner_id)"
            )
            await db.commit()

        logger.debug(f"Database schema ready: {self.database_path}")

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(str(self.database_path))

    async def _fetch_all(self, query: str, params: tuple = ()) -> list[aiosqlite.Row]:
        await self._ensure_initialized()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                return list(await cursor.fetchall())

    async def _execute(self, query: str, params: tuple = ()) -> int:
        """Run a write statement and return the affected row count."""
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    # Events

    async def create_event(self, data: EventData) -> Event:
        event = Event(id=uuid.uuid4().hex, **data.model_dump())
        values = event.model_dump()
        row = tuple(_to_db(values[field]) for field in EVENT_FIELDS)
        placeholders = ", ".join("?" for _ in EVENT_COLUMNS)
        await self._execute(
            f"INSERT INTO events ({', '.join(EVENT_COLUMNS)}) VALUES ({placeholders})", row
        )
        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        rows = await self._fetch_all("SELECT * FROM events WHERE id = ?", (event_id,))
        return _event_from_row(rows[0]) if rows else None

    async def update_event(self, event_id: str, changes: dict[str, Any]) -> Event:
        check_fields(changes, UPDATABLE_EVENT_FIELDS)
        current = await self.get_event(event_id)
        if current is None:
            raise StoreError(f"Event {event_id} not found", event_id)

        updated = Event.model_validate({**current.model_dump(), **changes})
        if changes:
            values = updated.model_dump()
            assignments = ", ".join(
                f"{EVENT_FIELD_COLUMNS.get(field, field)} = ?" for field in changes
            )
            params = tuple(_to_db(values[field]) for field in changes) + (event_id,)
            await self._execute(f"UPDATE events SET {assignments} WHERE id = ?", params)
        return updated

    async def delete_event(self, event_id: str) -> None:
        if await self._execute("DELETE FROM events WHERE id = ?", (event_id,)) == 0:
            raise StoreError(f"Event {event_id} not found", event_id)

    async def list_events(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Event]:
        rows = await self._fetch_all(
            "SELECT * FROM events WHERE owner_id = ? ORDER BY start_at", (owner_id,)
        )
        events = [_event_from_row(row) for row in rows]

        # Timestamps with offsets don't order reliably as text; filter on parsed values
        selected = []
        for event in events:
            if event.is_recurring:
                if end is not None and event.anchor >= end:
                    continue
            elif start is not None and end is not None and not event.intersects(start, end):
                continue
            selected.append(event)
        return sorted(selected, key=lambda e: e.start)

    async def list_sourced_events(
        self, subscription_id: Optional[str], owner_id: Optional[str] = None
    ) -> list[Event]:
        query = "SELECT * FROM events WHERE source_uid IS NOT NULL AND source_subscription_id IS ?"
        params: tuple = (subscription_id,)
        if owner_id is not None:
            query += " AND owner_id = ?"
            params += (owner_id,)
        return [_event_from_row(row) for row in await self._fetch_all(query, params)]

    async def count_by_subscription(self, subscription_id: str) -> int:
        rows = await self._fetch_all(
            "SELECT COUNT(*) AS total FROM events WHERE source_subscription_id = ?",
            (subscription_id,),
        )
        return int(rows[0]["total"])

    async def delete_by_subscription(self, subscription_id: str) -> int:
        return await self._execute(
            "DELETE FROM events WHERE source_subscription_id = ?", (subscription_id,)
        )

    # Subscriptions

    async def create_subscription(self, data: SubscriptionCreate) -> CalendarSubscription:
        subscription = CalendarSubscription(id=uuid.uuid4().hex, **data.model_dump())
        values = subscription.model_dump()
        placeholders = ", ".join("?" for _ in SUBSCRIPTION_COLUMNS)
        await self._execute(
            f"INSERT INTO subscriptions ({', '.join(SUBSCRIPTION_COLUMNS)}) VALUES ({placeholders})",
            tuple(_to_db(values[column]) for column in SUBSCRIPTION_COLUMNS),
        )
        return subscription

    async def get_subscription(self, subscription_id: str) -> Optional[CalendarSubscription]:
        rows = await self._fetch_all("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
        return _subscription_from_row(rows[0]) if rows else None

    async def list_subscriptions(self, owner_id: Optional[str] = None) -> list[CalendarSubscription]:
        if owner_id is None:
            rows = await self._fetch_all("SELECT * FROM subscriptions ORDER BY created_at")
        else:
            rows = await self._fetch_all(
                "SELECT * FROM subscriptions WHERE owner_id = ? ORDER BY created_at", (owner_id,)
            )
        return [_subscription_from_row(row) for row in rows]

    async def list_auto_sync(self) -> list[CalendarSubscription]:
        rows = await self._fetch_all(
            "SELECT * FROM subscriptions WHERE auto_sync = 1 ORDER BY created_at"
        )
        return [_subscription_from_row(row) for row in rows]

    async def update_subscription(
        self, subscription_id: str, changes: dict[str, Any]
    ) -> CalendarSubscription:
        check_fields(changes, UPDATABLE_SUBSCRIPTION_FIELDS)
        current = await self.get_subscription(subscription_id)
        if current is None:
            raise StoreError(f"Subscription {subscription_id} not found", subscription_id)

        updated = CalendarSubscription.model_validate(
            {**current.model_dump(), **changes, "updated_at": utc_now()}
        )
        values = updated.model_dump()
        columns = [*changes, "updated_at"]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params = tuple(_to_db(values[column]) for column in columns) + (subscription_id,)
        await self._execute(f"UPDATE subscriptions SET {assignments} WHERE id = ?", params)
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
        if update_validators:
            affected = await self._execute(
                """
                UPDATE subscriptions
                SET last_sync_at = ?, last_sync_error = ?, etag = ?, last_modified = ?
                WHERE id = ?
            """,
                (synced_at.isoformat(), error, etag, last_modified, subscription_id),
            )
        else:
            affected = await self._execute(
                "UPDATE subscriptions SET last_sync_at = ?, last_sync_error = ? WHERE id = ?",
                (synced_at.isoformat(), error, subscription_id),
            )
        if affected == 0:
            raise StoreError(f"Subscription {subscription_id} not found", subscription_id)

    async def delete_subscription(self, subscription_id: str) -> None:
        if await self._execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,)) == 0:
            raise StoreError(f"Subscription {subscription_id} not found", subscription_id)
