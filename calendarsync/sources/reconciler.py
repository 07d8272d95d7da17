"""Reconciliation of feed contents against stored events by identity key."""

import logging
from typing import Any, Iterable, Mapping, Optional

from ..ics.models import DEFAULT_EVENT_COLOR, CandidateEvent, Event, EventData
from ..store.base import EventStore
from .models import ReconcileResult

logger = logging.getLogger(__name__)


def index_by_uid(events: Iterable[Event]) -> dict[str, Event]:
    """Map stored events by source uid. The first event seen for a uid wins."""
    indexed: dict[str, Event] = {}
    for event in events:
        if event.source_uid is None:
            continue
        if event.source_uid in indexed:
            logger.warning(
                f"Duplicate stored events for uid {event.source_uid}: "
                f"keeping {indexed[event.source_uid].id}, ignoring {event.id}"
            )
            continue
        indexed[event.source_uid] = event
    return indexed


def dedupe_candidates(candidates: Iterable[CandidateEvent]) -> list[CandidateEvent]:
    """Drop candidates whose uid already appeared earlier in the feed."""
    seen: set[str] = set()
    unique: list[CandidateEvent] = []
    for candidate in candidates:
        if candidate.uid in seen:
            logger.warning(f"Duplicate uid {candidate.uid} in feed, keeping the first occurrence")
            continue
        seen.add(candidate.uid)
        unique.append(candidate)
    return unique


def changed_fields(stored: Event, candidate: CandidateEvent) -> dict[str, Any]:
    """Fields whose candidate values differ from the stored event."""
    return {
        field: value
        for field, value in candidate.event_fields().items()
        if getattr(stored, field) != value
    }


class Reconciler:
    """Applies add/update/delete plans to an event store.

    Every row operation is attempted independently; failures are collected
    rather than raised so one bad row never blocks the rest.
    """

    def __init__(self, store: EventStore):
        """Initialize reconciler.

        Args:
            store: Event store the plan is applied to
        """
        self.store = store

    async def reconcile(
        self,
        subscription_id: Optional[str],
        previous_by_uid: Mapping[str, Event],
        candidates: Iterable[CandidateEvent],
        *,
        owner_id: str,
        color: str = DEFAULT_EVENT_COLOR,
        prune: bool = True,
    ) -> ReconcileResult:
        """Make the stored events for one source match the candidate set.

        Args:
            subscription_id: Subscription the events belong to (None for manual imports)
            previous_by_uid: Stored events for this source keyed by source uid
            candidates: Events parsed from the latest feed
            owner_id: Owner assigned to created events
            color: Color assigned to created events
            prune: Delete stored events missing from the candidates

        Returns:
            Counts of successful operations and per-row error messages
        """
        result = ReconcileResult()
        unique = dedupe_candidates(candidates)
        seen_uids: set[str] = set()

        for candidate in unique:
            seen_uids.add(candidate.uid)
            existing = previous_by_uid.get(candidate.uid)

            if existing is None:
                await self._create(subscription_id, candidate, owner_id, color, result)
            else:
                await self._update(existing, candidate, result)

        if prune:
            for uid, stale in previous_by_uid.items():
                if uid in seen_uids:
                    continue
                await self._delete(stale, result)

        logger.info(
            f"Reconciled source {subscription_id or 'manual-import'}: "
            f"{result.added} added, {result.updated} updated, {result.deleted} deleted, "
            f"{result.unchanged} unchanged, {len(result.errors)} error(s)"
        )
        return result

    async def _create(
        self,
        subscription_id: Optional[str],
        candidate: CandidateEvent,
        owner_id: str,
        color: str,
        result: ReconcileResult,
    ) -> None:
        try:
            await self.store.create_event(
                EventData(
                    owner_id=owner_id,
                    color=color,
                    source_subscription_id=subscription_id,
                    source_uid=candidate.uid,
                    **candidate.event_fields(),
                )
            )
            result.added += 1
        except Exception as e:
            logger.warning(f"Failed to create event {candidate.uid}: {e}")
            result.errors.append(f"Failed to create event {candidate.uid}: {e}")

    async def _update(
        self, existing: Event, candidate: CandidateEvent, result: ReconcileResult
    ) -> None:
        changes = changed_fields(existing, candidate)
        if not changes:
            result.unchanged += 1
            return

        try:
            await self.store.update_event(existing.id, changes)
            result.updated += 1
            logger.debug(f"Updated event {existing.id} ({', '.join(sorted(changes))})")
        except Exception as e:
            logger.warning(f"Failed to update event {candidate.uid}: {e}")
            result.errors.append(f"Failed to update event {candidate.uid}: {e}")

    async def _delete(self, stale: Event, result: ReconcileResult) -> None:
        try:
            await self.store.delete_event(stale.id)
            result.deleted += 1
        except Exception as e:
            logger.warning(f"Failed to delete event {stale.source_uid}: {e}")
            result.errors.append(f"Failed to delete event {stale.source_uid}: {e}")
