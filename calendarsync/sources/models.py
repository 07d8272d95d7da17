"""Data models for calendar subscriptions and sync outcomes."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..ics.models import DEFAULT_EVENT_COLOR
from ..utils.helpers import ensure_utc, utc_now


class SyncState(str, Enum):
    """Lifecycle state of one subscription inside the scheduler."""

    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"


class SyncOutcome(str, Enum):
    """How the last finished sync cycle ended."""

    SUCCESS = "success"
    NOT_MODIFIED = "not_modified"
    FAILED = "failed"


def normalize_feed_url(url: str) -> str:
    """Trim a feed URL and rewrite ``webcal://`` to ``https://``."""
    url = url.strip()
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://") :]
    return url


class SubscriptionCreate(BaseModel):
    """Fields supplied when subscribing to an external calendar."""

    owner_id: str
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    color: str = DEFAULT_EVENT_COLOR
    auto_sync: bool = True
    sync_interval_minutes: int = Field(default=60, gt=0)

    @field_validator("url")
    @classmethod
    def _normalize_url(cls, value: str) -> str:
        return normalize_feed_url(value)


class SubscriptionUpdate(BaseModel):
    """Partial update of a subscription's user-editable fields."""

    name: Optional[str] = Field(default=None, min_length=1)
    url: Optional[str] = Field(default=None, min_length=1)
    color: Optional[str] = None
    auto_sync: Optional[bool] = None
    sync_interval_minutes: Optional[int] = Field(default=None, gt=0)

    @field_validator("url")
    @classmethod
    def _normalize_url(cls, value: Optional[str]) -> Optional[str]:
        return normalize_feed_url(value) if value is not None else None

    def changes(self) -> dict:
        """Fields explicitly set on this update."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class CalendarSubscription(SubscriptionCreate):
    """A persisted external calendar subscription."""

    id: str
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(validate_assignment=True)

    @field_validator("last_sync_at", "created_at", "updated_at")
    @classmethod
    def _utc_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def sync_interval(self) -> timedelta:
        return timedelta(minutes=self.sync_interval_minutes)

    @property
    def next_sync_at(self) -> Optional[datetime]:
        """When the subscription next becomes due, or None if it has never synced."""
        if self.last_sync_at is None:
            return None
        return self.last_sync_at + self.sync_interval

    def is_due(self, now: datetime) -> bool:
        """Check whether the scheduler should sync this subscription at ``now``."""
        if not self.auto_sync:
            return False
        if self.last_sync_at is None:
            return True
        return ensure_utc(now) >= self.last_sync_at + self.sync_interval


class ReconcileResult(BaseModel):
    """Counts and per-row failures from one reconciliation pass."""

    added: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def changed(self) -> int:
        return self.added + self.updated + self.deleted


class ImportResult(BaseModel):
    """Outcome of a manual iCalendar import."""

    imported: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: list[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Outcome of one sync cycle for a subscription."""

    subscription_id: str
    success: bool
    outcome: Optional[SyncOutcome] = None
    added: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    not_modified: bool = False
    skipped: bool = False
    error: Optional[str] = None
    errors: list[str] = Field(default_factory=list)
    synced_at: Optional[datetime] = None

    @classmethod
    def from_reconcile(
        cls, subscription_id: str, result: ReconcileResult, synced_at: datetime
    ) -> "SyncResult":
        return cls(
            subscription_id=subscription_id,
            success=True,
            outcome=SyncOutcome.SUCCESS,
            added=result.added,
            updated=result.updated,
            deleted=result.deleted,
            unchanged=result.unchanged,
            errors=list(result.errors),
            synced_at=synced_at,
        )


class SyncStatus(BaseModel):
    """Sync health of one subscription as reported to its owner."""

    subscription_id: str
    state: SyncState = SyncState.IDLE
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    last_outcome: Optional[SyncOutcome] = None
    event_count: int = 0
    next_sync_at: Optional[datetime] = None
    auto_sync: bool = True
