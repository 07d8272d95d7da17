"""Application container wiring stores, fetcher, scheduler and services."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Optional, Union

from .config.settings import CalendarSyncSettings, get_settings
from .ics.expander import ExpansionCache, OccurrenceExpander
from .ics.fetcher import ICSFetcher
from .ics.parser import ICSParser
from .ics.writer import ICSWriter
from .service import CalendarService
from .sources.manager import SubscriptionManager
from .sources.reconciler import Reconciler
from .sources.scheduler import SyncScheduler
from .store.database import SQLiteStore

logger = logging.getLogger(__name__)


class CalendarSyncApp:
    """Main application coordinating all components over one SQLite store."""

    def __init__(
        self,
        settings: Optional[CalendarSyncSettings] = None,
        database_path: Optional[Union[Path, str]] = None,
    ) -> None:
        """Initialize application components (no I/O).

        Args:
            settings: Application settings (global settings by default)
            database_path: Overrides the configured database file
        """
        self.settings = settings or get_settings()
        self.store = SQLiteStore(database_path or self.settings.database_file)

        parser = ICSParser()
        reconciler = Reconciler(self.store)

        self.fetcher = ICSFetcher(self.settings)
        self.scheduler = SyncScheduler(
            self.store,
            self.store,
            self.fetcher,
            self.settings,
            parser=parser,
            reconciler=reconciler,
        )
        self.manager = SubscriptionManager(
            self.store, self.store, self.fetcher, self.scheduler, parser=parser
        )
        self.service = CalendarService(
            self.store,
            expander=OccurrenceExpander(
                cache=ExpansionCache(
                    max_size=self.settings.expansion_cache_size,
                    ttl=self.settings.expansion_cache_ttl,
                ),
                cap=self.settings.expansion_cap,
            ),
            parser=parser,
            writer=ICSWriter(),
            reconciler=reconciler,
        )

        self.shutdown_event = asyncio.Event()

    async def __aenter__(self) -> "CalendarSyncApp":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.cleanup()

    async def run_forever(self) -> None:
        """Run the sync scheduler until ``stop()`` is called."""
        logger.info("Starting CalendarSync scheduler...")
        await self.scheduler.start()
        try:
            await self.shutdown_event.wait()
        finally:
            await self.scheduler.stop()

    async def stop(self) -> None:
        """Request shutdown of ``run_forever``."""
        logger.info("Stopping CalendarSync...")
        self.shutdown_event.set()

    async def cleanup(self) -> None:
        """Release network resources."""
        if self.scheduler.is_running:
            await self.scheduler.stop()
        await self.fetcher.close()
        logger.debug("Cleanup completed")


def setup_signal_handlers(app: CalendarSyncApp) -> None:
    """Set up signal handlers for graceful shutdown."""

    background_tasks = set()

    def signal_handler(signum: int, frame: Any) -> None:  # noqa: ARG001
        logger.info(f"Received signal {signum}")
        task = asyncio.create_task(app.stop())
        background_tasks.add(task)
        task.add_done_callback(background_tasks.discard)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
