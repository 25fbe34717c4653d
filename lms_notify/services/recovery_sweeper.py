"""
Recovery sweeper.

Hands PROCESSING items back to the queue once their lease expires, and
applies retention to terminal queue items and delivery records.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lms_notify.config import Settings, settings as default_settings
from lms_notify.logging_config import get_logger
from lms_notify.models.base import utc_now, ensure_utc
from lms_notify.sentry_config import capture_exception
from lms_notify.services.delivery_tracker import DeliveryTracker
from lms_notify.services.queue_manager import QueueManager


logger = get_logger(component="recovery_sweeper")


class RecoverySweeper:
    """Periodic lease recovery and retention."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.clock = clock

    @property
    def lease_timeout(self) -> timedelta:
        return timedelta(seconds=self.settings.NOTIFY_LEASE_TIMEOUT_SECONDS)

    async def sweep_once(self, now: datetime | None = None) -> int:
        """Reclaim items whose processing started more than one lease ago."""
        now = ensure_utc(now) if now is not None else self.clock()
        async with self.session_factory() as db:
            queue = QueueManager(db, self.clock)
            return await queue.sweep_stuck(now - self.lease_timeout)

    async def purge_once(self, now: datetime | None = None) -> tuple[int, int]:
        """
        Delete terminal rows past their retention window.

        Returns:
            (queue items deleted, delivery records deleted)
        """
        now = ensure_utc(now) if now is not None else self.clock()
        async with self.session_factory() as db:
            queue_purged = await QueueManager(db, self.clock).purge_old(
                now - timedelta(days=self.settings.QUEUE_RETENTION_DAYS)
            )
            deliveries_purged = await DeliveryTracker(db, self.clock).purge_old(
                now - timedelta(days=self.settings.DELIVERY_RETENTION_DAYS)
            )
        return queue_purged, deliveries_purged

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Sweep every NOTIFY_SWEEP_INTERVAL_SECONDS until stop_event is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info("sweeper_started", lease_timeout_seconds=self.settings.NOTIFY_LEASE_TIMEOUT_SECONDS)
        while not stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception as e:  # noqa: BLE001 - retried on the next interval
                logger.exception("sweep_failed", error=str(e))
                capture_exception(e, component="recovery_sweeper")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.NOTIFY_SWEEP_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                pass
        logger.info("sweeper_stopped")
