"""Background scheduler that keeps subscriptions in sync with their feeds."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional

from ..ics.exceptions import FeedUnreachable, ICSError
from ..ics.fetcher import ICSFetcher
from ..ics.models import NotModified
from ..ics.parser import ICSParser
from ..store.base import EventStore, SubscriptionStore
from ..utils.helpers import utc_now
from .exceptions import SubscriptionNotFoundError
from .models import CalendarSubscription, SyncOutcome, SyncResult, SyncState
from .reconciler import Reconciler, index_by_uid

logger = logging.getLogger(__name__)

SYNC_IN_PROGRESS_MESSAGE = "Sync already in progress"


class SyncScheduler:
    """Runs fetch, parse and reconcile cycles for due subscriptions.

    At most one cycle runs per subscription at a time; cycles for different
    subscriptions run concurrently up to ``max_concurrent_syncs``.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        events: EventStore,
        fetcher: ICSFetcher,
        settings: Any,
        parser: Optional[ICSParser] = None,
        reconciler: Optional[Reconciler] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize scheduler.

        Args:
            subscriptions: Subscription store
            events: Event store the reconciler writes to
            fetcher: Feed fetcher
            settings: Application settings (tick interval, cycle timeout, concurrency)
            parser: Feed parser
            reconciler: Reconciler (built on ``events`` by default)
            clock: Returns the current UTC time
        """
        self.subscriptions = subscriptions
        self.events = events
        self.fetcher = fetcher
        self.settings = settings
        self.parser = parser or ICSParser()
        self.reconciler = reconciler or Reconciler(events)
        self.clock = clock

        self._in_flight: set[str] = set()
        self._idle_events: dict[str, asyncio.Event] = {}
        self._states: dict[str, SyncState] = {}
        self._outcomes: dict[str, SyncOutcome] = {}
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        """Check if the background loop is active."""
        return self._task is not None and not self._task.done()

    def state_of(self, subscription_id: str) -> SyncState:
        return self._states.get(subscription_id, SyncState.IDLE)

    def last_outcome(self, subscription_id: str) -> Optional[SyncOutcome]:
        return self._outcomes.get(subscription_id)

    def is_in_flight(self, subscription_id: str) -> bool:
        return subscription_id in self._in_flight

    def _claim(self, subscription_id: str) -> None:
        self._in_flight.add(subscription_id)
        self._idle_events[subscription_id] = asyncio.Event()

    def _release(self, subscription_id: str) -> None:
        self._states[subscription_id] = SyncState.IDLE
        self._in_flight.discard(subscription_id)
        idle = self._idle_events.pop(subscription_id, None)
        if idle is not None:
            idle.set()

    @asynccontextmanager
    async def exclusive(self, subscription_id: str) -> AsyncIterator[None]:
        """Hold a subscription's sync slot, waiting for a running cycle to finish.

        While held, scans skip the subscription and ``sync_now`` reports it as
        already syncing.
        """
        while subscription_id in self._in_flight:
            logger.debug(f"Waiting for running sync of {subscription_id} to finish")
            await self._idle_events[subscription_id].wait()

        self._claim(subscription_id)
        try:
            yield
        finally:
            self._release(subscription_id)

    async def start(self) -> None:
        """Start the background loop. The first scan runs immediately."""
        if self.is_running:
            logger.warning("Sync scheduler already running")
            return

        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Sync scheduler started (interval: {self.settings.sync_tick_interval}s)")

    async def stop(self) -> None:
        """Stop the background loop and wait for the current scan to finish."""
        if self._task is None:
            return

        if self._shutdown_event is not None:
            self._shutdown_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=self.settings.sync_cycle_timeout)
        except asyncio.TimeoutError:
            logger.warning("Sync scheduler did not stop in time, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None

        logger.info("Sync scheduler stopped")

    async def _run_loop(self) -> None:
        assert self._shutdown_event is not None

        while not self._shutdown_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Sync scan failed")

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.settings.sync_tick_interval
                )
            except asyncio.TimeoutError:
                continue

    async def tick(self) -> list[SyncResult]:
        """Scan auto-sync subscriptions once and sync every idle, due one.

        Returns:
            Results of the cycles started by this scan
        """
        now = self.clock()
        candidates = await self.subscriptions.list_auto_sync()

        due: list[CalendarSubscription] = []
        for subscription in candidates:
            if subscription.id in self._in_flight:
                logger.debug(f"Subscription {subscription.id} already syncing, skipping")
                continue
            if subscription.is_due(now):
                # Claimed before any suspension point so overlapping scans skip it
                self._claim(subscription.id)
                due.append(subscription)

        if not due:
            return []

        logger.info(f"Syncing {len(due)} due subscription(s)")
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_syncs)
        unreleased = {s.id for s in due}

        async def run(subscription: CalendarSubscription) -> SyncResult:
            try:
                async with semaphore:
                    return await self._run_cycle(subscription)
            finally:
                unreleased.discard(subscription.id)
                self._release(subscription.id)

        try:
            return list(await asyncio.gather(*(run(s) for s in due)))
        finally:
            # Cycles cancelled before their first step never enter run()
            for subscription_id in unreleased:
                self._release(subscription_id)

    async def sync_now(self, subscription_id: str) -> SyncResult:
        """Force a cycle regardless of the due check.

        Args:
            subscription_id: Subscription to sync

        Returns:
            Cycle result; ``skipped`` is set when a cycle is already running

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
        """
        subscription = await self.subscriptions.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id
            )

        if subscription_id in self._in_flight:
            logger.info(f"Manual sync of {subscription_id} skipped: {SYNC_IN_PROGRESS_MESSAGE}")
            return SyncResult(
                subscription_id=subscription_id,
                success=False,
                skipped=True,
                error=SYNC_IN_PROGRESS_MESSAGE,
            )

        self._claim(subscription_id)
        return await self._run_cycle(subscription)

    async def _run_cycle(self, subscription: CalendarSubscription) -> SyncResult:
        """Run one bounded cycle and record its outcome. The caller has claimed the slot."""
        try:
            result, validators = await self._attempt(subscription)

            result.synced_at = self.clock()
            try:
                await self.subscriptions.record_sync(
                    subscription.id,
                    synced_at=result.synced_at,
                    error=result.error,
                    etag=validators[0] if validators else None,
                    last_modified=validators[1] if validators else None,
                    update_validators=validators is not None,
                )
            except Exception:
                logger.exception(f"Failed to record sync status for subscription {subscription.id}")

            self._outcomes[subscription.id] = result.outcome or SyncOutcome.FAILED
            return result

        finally:
            self._release(subscription.id)

    async def _attempt(
        self, subscription: CalendarSubscription
    ) -> tuple[SyncResult, Optional[tuple[Optional[str], Optional[str]]]]:
        """Run the cycle under the timeout, turning failures into a failed result."""
        timeout = self.settings.sync_cycle_timeout

        try:
            try:
                return await asyncio.wait_for(self._sync(subscription), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise FeedUnreachable(f"Sync cycle timed out after {timeout}s") from e

        except ICSError as e:
            logger.warning(f"Sync failed for subscription {subscription.id}: {e.message}")
            error = e.message

        except Exception as e:
            logger.exception(f"Unexpected error syncing subscription {subscription.id}")
            error = f"Unexpected sync error: {e}"

        failed = SyncResult(
            subscription_id=subscription.id,
            success=False,
            outcome=SyncOutcome.FAILED,
            error=error,
        )
        return failed, None

    async def _sync(
        self, subscription: CalendarSubscription
    ) -> tuple[SyncResult, tuple[Optional[str], Optional[str]]]:
        """Fetch, parse and reconcile one subscription.

        Returns:
            The cycle result and the cache validators to store
        """
        self._states[subscription.id] = SyncState.FETCHING
        logger.debug(f"Fetching subscription {subscription.id} from {subscription.url}")

        fetched = await self.fetcher.fetch(
            subscription.url, etag=subscription.etag, last_modified=subscription.last_modified
        )

        if isinstance(fetched, NotModified):
            logger.info(f"Subscription {subscription.id} not modified")
            result = SyncResult(
                subscription_id=subscription.id,
                success=True,
                outcome=SyncOutcome.NOT_MODIFIED,
                not_modified=True,
            )
            return result, (
                fetched.etag or subscription.etag,
                fetched.last_modified or subscription.last_modified,
            )

        candidates = self.parser.parse(fetched.body)

        self._states[subscription.id] = SyncState.RECONCILING
        previous_by_uid = index_by_uid(await self.events.list_sourced_events(subscription.id))

        reconciled = await self.reconciler.reconcile(
            subscription.id,
            previous_by_uid,
            candidates,
            owner_id=subscription.owner_id,
            color=subscription.color,
        )

        result = SyncResult.from_reconcile(subscription.id, reconciled, self.clock())
        return result, (fetched.etag, fetched.last_modified)
