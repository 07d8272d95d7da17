"""Unit tests for SyncScheduler."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from calendarsync.ics.exceptions import FeedUnreachable
from calendarsync.ics.models import Fetched, NotModified
from calendarsync.sources.exceptions import SubscriptionNotFoundError
from calendarsync.sources.models import SubscriptionCreate, SyncOutcome, SyncState
from calendarsync.sources.scheduler import SYNC_IN_PROGRESS_MESSAGE, SyncScheduler

FEED_URL = "https://calendar.example.com/feed.ics"


@pytest.fixture
def fetcher(sample_ics):
    fetcher = Mock()
    fetcher.fetch = AsyncMock(return_value=Fetched(body=sample_ics, etag='"v1"'))
    return fetcher


@pytest.fixture
def scheduler(memory_store, fetcher, test_settings, fixed_now):
    return SyncScheduler(
        memory_store, memory_store, fetcher, test_settings, clock=lambda: fixed_now
    )


async def subscribe(store, **overrides):
    fields = {"owner_id": "owner-1", "name": "Team", "url": FEED_URL}
    fields.update(overrides)
    return await store.create_subscription(SubscriptionCreate(**fields))


class TestDueDetection:
    """Tests for which subscriptions a scan picks up."""

    @pytest.mark.asyncio
    async def test_never_synced_subscription_is_due(self, scheduler, memory_store, fetcher):
        """Test that a subscription that has never synced is synced on the first scan."""
        subscription = await subscribe(memory_store)

        results = await scheduler.tick()

        assert [r.subscription_id for r in results] == [subscription.id]
        fetcher.fetch.assert_awaited_once_with(FEED_URL, etag=None, last_modified=None)

    @pytest.mark.asyncio
    async def test_recently_synced_subscription_is_not_due(
        self, scheduler, memory_store, fetcher, fixed_now
    ):
        """Test that a subscription synced within its interval is skipped."""
        subscription = await subscribe(memory_store, sync_interval_minutes=60)
        await memory_store.record_sync(
            subscription.id, synced_at=fixed_now - timedelta(minutes=30), error=None
        )

        assert await scheduler.tick() == []
        fetcher.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_interval_elapsed_is_due(self, scheduler, memory_store, fixed_now):
        """Test that a subscription becomes due once its interval has elapsed."""
        subscription = await subscribe(memory_store, sync_interval_minutes=60)
        await memory_store.record_sync(
            subscription.id, synced_at=fixed_now - timedelta(minutes=60), error=None
        )

        results = await scheduler.tick()

        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_manual_subscription_is_never_scheduled(self, scheduler, memory_store, fetcher):
        """Test that auto_sync=False subscriptions are left alone by scans."""
        await subscribe(memory_store, auto_sync=False)

        assert await scheduler.tick() == []
        fetcher.fetch.assert_not_awaited()


class TestSyncCycle:
    """Tests for the outcome of a single cycle."""

    @pytest.mark.asyncio
    async def test_successful_cycle(self, scheduler, memory_store, fixed_now):
        """Test that a fresh feed is reconciled and the status written."""
        subscription = await subscribe(memory_store, color="#00ff00")

        result = await scheduler.sync_now(subscription.id)

        assert result.success is True
        assert result.outcome == SyncOutcome.SUCCESS
        assert result.added == 3
        assert result.synced_at == fixed_now

        stored = await memory_store.get_subscription(subscription.id)
        assert stored.last_sync_at == fixed_now
        assert stored.last_sync_error is None
        assert stored.etag == '"v1"'

        events = await memory_store.list_sourced_events(subscription.id)
        assert len(events) == 3
        assert all(e.color == "#00ff00" and e.owner_id == "owner-1" for e in events)
        assert scheduler.last_outcome(subscription.id) == SyncOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_not_modified_cycle(self, scheduler, memory_store, fetcher, fixed_now):
        """Test that a 304 touches no events, clears the error and keeps validators."""
        subscription = await subscribe(memory_store)
        await scheduler.sync_now(subscription.id)
        await memory_store.record_sync(
            subscription.id,
            synced_at=fixed_now - timedelta(hours=2),
            error="old failure",
        )
        before = await memory_store.list_sourced_events(subscription.id)

        fetcher.fetch.return_value = NotModified()
        scheduler.reconciler = Mock(reconcile=AsyncMock())

        result = await scheduler.sync_now(subscription.id)

        assert result.success is True
        assert result.not_modified is True
        assert result.outcome == SyncOutcome.NOT_MODIFIED
        scheduler.reconciler.reconcile.assert_not_awaited()
        fetcher.fetch.assert_awaited_with(FEED_URL, etag='"v1"', last_modified=None)

        stored = await memory_store.get_subscription(subscription.id)
        assert stored.last_sync_error is None
        assert stored.last_sync_at == fixed_now
        assert stored.etag == '"v1"'
        assert await memory_store.list_sourced_events(subscription.id) == before

    @pytest.mark.asyncio
    async def test_fetch_failure_is_recorded(self, scheduler, memory_store, fetcher, fixed_now):
        """Test that a failed fetch sets the error and leaves events intact."""
        subscription = await subscribe(memory_store)
        await scheduler.sync_now(subscription.id)

        fetcher.fetch.side_effect = FeedUnreachable("HTTP 500: Internal Server Error", 500)
        result = await scheduler.sync_now(subscription.id)

        assert result.success is False
        assert result.outcome == SyncOutcome.FAILED
        assert result.error == "HTTP 500: Internal Server Error"

        stored = await memory_store.get_subscription(subscription.id)
        assert stored.last_sync_error == "HTTP 500: Internal Server Error"
        assert stored.last_sync_at == fixed_now
        assert stored.etag == '"v1"'
        assert len(await memory_store.list_sourced_events(subscription.id)) == 3

    @pytest.mark.asyncio
    async def test_invalid_feed_is_recorded(self, scheduler, memory_store, fetcher):
        """Test that an unparsable body fails the cycle without touching events."""
        subscription = await subscribe(memory_store)
        fetcher.fetch.return_value = Fetched(body="BEGIN:VCALENDAR\r\nBEGIN:VEVENT\r\n")

        result = await scheduler.sync_now(subscription.id)

        assert result.success is False
        assert "Invalid iCalendar format" in result.error
        assert await memory_store.list_sourced_events(subscription.id) == []

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded(self, scheduler, memory_store, fetcher):
        """Test that an unexpected exception fails the cycle instead of escaping."""
        subscription = await subscribe(memory_store)
        fetcher.fetch.side_effect = RuntimeError("kaboom")

        result = await scheduler.sync_now(subscription.id)

        assert result.success is False
        assert "kaboom" in result.error
        assert not scheduler.is_in_flight(subscription.id)

    @pytest.mark.asyncio
    async def test_cycle_timeout(self, scheduler, memory_store, fetcher, test_settings):
        """Test that a cycle exceeding the timeout is recorded as unreachable."""
        test_settings.sync_cycle_timeout = 0.05
        subscription = await subscribe(memory_store)

        async def slow_fetch(*args, **kwargs):
            await asyncio.sleep(5)

        fetcher.fetch.side_effect = slow_fetch

        result = await scheduler.sync_now(subscription.id)

        assert result.success is False
        assert "timed out" in result.error
        assert not scheduler.is_in_flight(subscription.id)
        assert scheduler.state_of(subscription.id) == SyncState.IDLE

        stored = await memory_store.get_subscription(subscription.id)
        assert "timed out" in stored.last_sync_error

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, scheduler):
        """Test that forcing a sync of a missing subscription raises."""
        with pytest.raises(SubscriptionNotFoundError):
            await scheduler.sync_now("missing")


class TestSingleFlight:
    """Tests for per-subscription non-reentrancy."""

    @pytest.mark.asyncio
    async def test_manual_sync_while_running_is_skipped(self, scheduler, memory_store, fetcher):
        """Test that a second cycle for the same subscription is refused."""
        subscription = await subscribe(memory_store)
        release = asyncio.Event()
        started = asyncio.Event()
        body = fetcher.fetch.return_value

        async def blocking_fetch(*args, **kwargs):
            started.set()
            await release.wait()
            return body

        fetcher.fetch.side_effect = blocking_fetch

        first = asyncio.create_task(scheduler.sync_now(subscription.id))
        await started.wait()

        assert scheduler.is_in_flight(subscription.id)
        assert scheduler.state_of(subscription.id) == SyncState.FETCHING

        second = await scheduler.sync_now(subscription.id)
        overlapping_scan = await scheduler.tick()

        release.set()
        first_result = await first

        assert second.skipped is True
        assert second.success is False
        assert second.error == SYNC_IN_PROGRESS_MESSAGE
        assert overlapping_scan == []
        assert first_result.success is True
        assert fetcher.fetch.await_count == 1
        assert not scheduler.is_in_flight(subscription.id)

    @pytest.mark.asyncio
    async def test_different_subscriptions_sync_concurrently(
        self, scheduler, memory_store, fetcher
    ):
        """Test that cycles for different subscriptions overlap."""
        await subscribe(memory_store, name="One")
        await subscribe(memory_store, name="Two")
        active = 0
        peak = 0
        body = fetcher.fetch.return_value

        async def counting_fetch(*args, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return body

        fetcher.fetch.side_effect = counting_fetch

        results = await scheduler.tick()

        assert len(results) == 2
        assert peak == 2

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, scheduler, memory_store, fetcher, test_settings):
        """Test that no more than max_concurrent_syncs cycles run at once."""
        test_settings.max_concurrent_syncs = 1
        await subscribe(memory_store, name="One")
        await subscribe(memory_store, name="Two")
        active = 0
        peak = 0
        body = fetcher.fetch.return_value

        async def counting_fetch(*args, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return body

        fetcher.fetch.side_effect = counting_fetch

        await scheduler.tick()

        assert peak == 1


class TestLifecycle:
    """Tests for start/stop of the background loop."""

    @pytest.mark.asyncio
    async def test_start_runs_first_scan_and_stop_ends_loop(
        self, scheduler, memory_store, fetcher
    ):
        """Test that start scans immediately and stop ends the loop."""
        await subscribe(memory_store)

        await scheduler.start()
        assert scheduler.is_running is True

        for _ in range(100):
            if fetcher.fetch.await_count:
                break
            await asyncio.sleep(0.01)

        await scheduler.stop()

        assert scheduler.is_running is False
        assert fetcher.fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_loop(self, scheduler):
        """Test that starting an already running scheduler is a no-op."""
        await scheduler.start()
        task = scheduler._task

        await scheduler.start()

        assert scheduler._task is task
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, scheduler):
        """Test that stopping a scheduler that never started is harmless."""
        await scheduler.stop()

        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_scan_errors_do_not_kill_loop(self, scheduler, memory_store):
        """Test that a failing scan is logged and the loop keeps running."""
        memory_store.list_auto_sync = AsyncMock(side_effect=RuntimeError("db gone"))

        await scheduler.start()
        await asyncio.sleep(0.02)

        assert scheduler.is_running is True
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_while_cycles_are_queued_releases_them(
        self, scheduler, memory_store, fetcher, test_settings
    ):
        """Test that cycles cancelled by stop() can be synced again afterwards."""
        test_settings.max_concurrent_syncs = 1
        test_settings.sync_cycle_timeout = 0.2
        subscriptions = [await subscribe(memory_store, name=f"Feed {i}") for i in range(5)]
        body = fetcher.fetch.return_value

        async def slow_fetch(*args, **kwargs):
            await asyncio.sleep(0.15)
            return body

        fetcher.fetch.side_effect = slow_fetch

        await scheduler.start()
        for _ in range(100):
            if fetcher.fetch.await_count:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert not any(scheduler.is_in_flight(s.id) for s in subscriptions)
        assert all(scheduler.state_of(s.id) == SyncState.IDLE for s in subscriptions)

        result = await scheduler.sync_now(subscriptions[-1].id)
        assert result.skipped is False
        assert result.success is True


class TestExclusive:
    """Tests for holding a subscription's sync slot."""

    @pytest.mark.asyncio
    async def test_held_slot_blocks_scans_and_manual_syncs(self, scheduler, memory_store, fetcher):
        """Test that nothing syncs a subscription while its slot is held."""
        subscription = await subscribe(memory_store)

        async with scheduler.exclusive(subscription.id):
            assert await scheduler.tick() == []
            skipped = await scheduler.sync_now(subscription.id)

        assert skipped.skipped is True
        fetcher.fetch.assert_not_awaited()
        assert not scheduler.is_in_flight(subscription.id)
        assert (await scheduler.sync_now(subscription.id)).success is True

    @pytest.mark.asyncio
    async def test_waits_for_running_cycle(self, scheduler, memory_store, fetcher):
        """Test that the slot is only granted once the running cycle has finished."""
        subscription = await subscribe(memory_store)
        release = asyncio.Event()
        started = asyncio.Event()
        body = fetcher.fetch.return_value

        async def blocking_fetch(*args, **kwargs):
            started.set()
            await release.wait()
            return body

        fetcher.fetch.side_effect = blocking_fetch
        cycle = asyncio.create_task(scheduler.sync_now(subscription.id))
        await started.wait()

        cycle_done_when_held = []

        async def hold():
            async with scheduler.exclusive(subscription.id):
                cycle_done_when_held.append(cycle.done())

        holder = asyncio.create_task(hold())
        await asyncio.sleep(0.01)
        assert cycle_done_when_held == []

        release.set()
        await holder

        assert cycle_done_when_held == [True]
        assert (await cycle).outcome == SyncOutcome.SUCCESS
