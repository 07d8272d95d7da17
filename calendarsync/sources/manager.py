"""Subscription management: validation, lifecycle and manual sync."""

import logging
from typing import Optional

from ..ics.exceptions import ICSError
from ..ics.fetcher import ICSFetcher
from ..ics.models import NotModified
from ..ics.parser import ICSParser
from ..store.base import EventStore, SubscriptionStore
from .exceptions import SubscriptionNotFoundError, SubscriptionValidationError
from .models import (
    CalendarSubscription,
    SubscriptionCreate,
    SubscriptionUpdate,
    SyncResult,
    SyncStatus,
)
from .scheduler import SyncScheduler

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Coordinates subscription lifecycle with the sync scheduler."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        events: EventStore,
        fetcher: ICSFetcher,
        scheduler: SyncScheduler,
        parser: Optional[ICSParser] = None,
    ):
        """Initialize subscription manager.

        Args:
            subscriptions: Subscription store
            events: Event store (for cascades and counts)
            fetcher: Feed fetcher used to validate URLs
            scheduler: Scheduler that runs sync cycles
            parser: Feed parser used to validate URLs
        """
        self.subscriptions = subscriptions
        self.events = events
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.parser = parser or ICSParser()

    async def _require(self, subscription_id: str) -> CalendarSubscription:
        subscription = await self.subscriptions.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id
            )
        return subscription

    async def validate_url(self, url: str) -> int:
        """Check that a URL serves a readable iCalendar feed.

        Args:
            url: Feed URL

        Returns:
            Number of events the feed currently contains

        Raises:
            SubscriptionValidationError: If the feed cannot be fetched or parsed
        """
        try:
            fetched = await self.fetcher.fetch(url)
            if isinstance(fetched, NotModified):
                raise SubscriptionValidationError(f"Unexpected 304 response validating {url}")
            candidates = self.parser.parse(fetched.body)
        except ICSError as e:
            logger.warning(f"Subscription URL failed validation: {url}: {e.message}")
            raise SubscriptionValidationError(f"Invalid calendar feed: {e.message}") from e

        logger.debug(f"Validated feed {url} ({len(candidates)} event(s))")
        return len(candidates)

    async def create_subscription(
        self, data: SubscriptionCreate
    ) -> tuple[CalendarSubscription, SyncResult]:
        """Validate, persist and immediately sync a new subscription.

        Args:
            data: Subscription fields

        Returns:
            The stored subscription (after its first sync) and that sync's result

        Raises:
            SubscriptionValidationError: If the URL does not serve a readable feed
        """
        await self.validate_url(data.url)

        subscription = await self.subscriptions.create_subscription(data)
        logger.info(f"Created subscription {subscription.id} ({subscription.name})")

        result = await self.scheduler.sync_now(subscription.id)
        return await self._require(subscription.id), result

    async def update_subscription(
        self, subscription_id: str, update: SubscriptionUpdate
    ) -> CalendarSubscription:
        """Update a subscription's editable fields.

        A changed URL is validated first, and the stored cache validators are
        cleared so the next fetch is unconditional.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
            SubscriptionValidationError: If a new URL does not serve a readable feed
        """
        current = await self._require(subscription_id)
        changes = update.changes()

        if "url" in changes and changes["url"] != current.url:
            await self.validate_url(changes["url"])
            changes["etag"] = None
            changes["last_modified"] = None
        else:
            changes.pop("url", None)

        if not changes:
            return current

        updated = await self.subscriptions.update_subscription(subscription_id, changes)
        logger.info(f"Updated subscription {subscription_id} ({', '.join(sorted(changes))})")
        return updated

    async def delete_subscription(self, subscription_id: str) -> int:
        """Delete a subscription together with every event it produced.

        A sync cycle already running for the subscription finishes first, so
        none of its events outlive the subscription.

        Returns:
            Number of events deleted

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
        """
        await self._require(subscription_id)

        async with self.scheduler.exclusive(subscription_id):
            # Another delete may have won while this one waited
            await self._require(subscription_id)
            deleted = await self.events.delete_by_subscription(subscription_id)
            await self.subscriptions.delete_subscription(subscription_id)

        logger.info(f"Deleted subscription {subscription_id} and {deleted} event(s)")
        return deleted

    async def list_subscriptions(self, owner_id: str) -> list[CalendarSubscription]:
        return await self.subscriptions.list_subscriptions(owner_id)

    async def sync_subscription(self, subscription_id: str) -> SyncResult:
        """Force a sync cycle now.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
        """
        return await self.scheduler.sync_now(subscription_id)

    async def sync_all(self, owner_id: str) -> list[SyncResult]:
        """Force a sync of every auto-sync subscription the owner has."""
        results = []
        for subscription in await self.subscriptions.list_subscriptions(owner_id):
            if not subscription.auto_sync:
                continue
            results.append(await self.scheduler.sync_now(subscription.id))

        synced = sum(1 for r in results if r.success)
        logger.info(f"Synced {synced}/{len(results)} subscription(s) for owner {owner_id}")
        return results

    async def get_sync_status(self, subscription_id: str) -> SyncStatus:
        """Report sync health of one subscription.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
        """
        subscription = await self._require(subscription_id)

        return SyncStatus(
            subscription_id=subscription.id,
            state=self.scheduler.state_of(subscription.id),
            last_sync_at=subscription.last_sync_at,
            last_sync_error=subscription.last_sync_error,
            last_outcome=self.scheduler.last_outcome(subscription.id),
            event_count=await self.events.count_by_subscription(subscription.id),
            next_sync_at=subscription.next_sync_at if subscription.auto_sync else None,
            auto_sync=subscription.auto_sync,
        )
