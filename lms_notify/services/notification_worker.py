"""
Notification worker.

Polls the queue for claimable items, sends each through the send channel,
records the attempt in the delivery tracker and reports the outcome back
to the queue. Workers share nothing but the database; any number of them
can run side by side.
"""
import asyncio
import enum
import os
import socket
import time
import uuid
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lms_notify.config import Settings, settings as default_settings
from lms_notify.errors import ErrorKind, SendError, TransientSendError, classify_exception
from lms_notify.logging_config import get_logger
from lms_notify.models.base import utc_now
from lms_notify.models.notification import Notification
from lms_notify.models.queue_item import QueueItem, QueueStatus
from lms_notify.routes.metrics import track_send, update_queue_depth
from lms_notify.sentry_config import capture_exception, capture_message
from lms_notify.services.delivery_tracker import DeliveryTracker
from lms_notify.services.queue_manager import QueueManager
from lms_notify.services.retry_policy import RetryPolicy
from lms_notify.services.send_channel import SendChannel, SendResult


T = TypeVar("T")


class ItemOutcome(str, enum.Enum):
    """What happened to one claimed item."""
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"
    LEASE_LOST = "lease_lost"
    ERRORED = "errored"


class WorkerBatchResult(BaseModel):
    """Counts for one poll of the queue."""
    claimed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    cancelled: int = 0
    lease_lost: int = 0
    errored: int = 0

    def record(self, outcome: ItemOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)


def default_worker_id() -> str:
    """Stable-per-process worker id: host, pid and a random suffix."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class NotificationWorker:
    """Queue consumer that delivers notification email."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channel: SendChannel,
        worker_id: str | None = None,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.worker_id = worker_id or default_worker_id()
        self.settings = settings or default_settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.clock = clock
        self.sleep = sleep
        self.log = get_logger(component="notification_worker", worker_id=self.worker_id)

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """
        Poll until stop_event is set.

        Sleeps for the poll interval whenever a poll claims nothing or fails.
        Infrastructure errors are logged and reported, never fatal.
        """
        stop_event = stop_event or asyncio.Event()
        self.log.info("worker_started", batch_size=self.settings.NOTIFY_BATCH_SIZE)
        while not stop_event.is_set():
            claimed = 0
            try:
                result = await self.run_once()
                claimed = result.claimed
            except Exception as e:  # noqa: BLE001 - keep polling; the sweeper recovers claimed items
                self.log.exception("worker_poll_failed", error=str(e), error_kind=classify_exception(e).value)
                capture_exception(e, worker_id=self.worker_id)
            if claimed == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.settings.NOTIFY_POLL_INTERVAL_SECONDS)
                except asyncio.TimeoutError:
                    pass
        self.log.info("worker_stopped")

    async def run_once(self) -> WorkerBatchResult:
        """Claim one batch and process every claimed item."""
        async with self.session_factory() as db:
            queue = QueueManager(db, self.clock)
            items = await self._with_db_timeout(
                queue.claim_batch(self.worker_id, self.settings.NOTIFY_BATCH_SIZE)
            )
            update_queue_depth(await self._with_db_timeout(queue.queue_length()))

        result = WorkerBatchResult(claimed=len(items))
        for item in items:
            try:
                outcome = await self.process_item(item)
            except (SQLAlchemyError, OSError) as e:
                # Item stays PROCESSING; the sweeper hands it back after the lease
                self.log.error(
                    "queue_item_errored",
                    queue_item_id=item.id,
                    error=str(e),
                    error_kind=ErrorKind.INFRASTRUCTURE.value,
                )
                capture_exception(e, worker_id=self.worker_id, queue_item_id=item.id)
                outcome = ItemOutcome.ERRORED
            result.record(outcome)

        if items:
            self.log.info("worker_batch_processed", **result.model_dump())
        return result

    async def process_item(self, item: QueueItem) -> ItemOutcome:
        """Deliver one claimed item and report its outcome."""
        log = self.log.bind(queue_item_id=item.id, notification_id=item.notification_id)
        async with self.session_factory() as db:
            queue = QueueManager(db, self.clock)
            tracker = DeliveryTracker(db, self.clock)

            notification = await db.get(Notification, item.notification_id)
            if notification is None:
                return await self._report_failure(
                    queue, item, "notification not found", ErrorKind.PERMANENT
                )

            metadata = item.queue_metadata or {}
            address = metadata.get("email_address") or notification.recipient_email
            if not address:
                return await self._report_failure(
                    queue, item, "no recipient email address", ErrorKind.PERMANENT
                )

            if not await self._renew_lease(queue, item):
                log.warning("queue_lease_lost", stage="before_send")
                return ItemOutcome.LEASE_LOST

            record = await tracker.begin(
                notification_id=notification.id,
                email_address=address,
                max_retries=self.settings.DELIVERY_MAX_RETRIES,
                metadata={"queue_item_id": item.id, "queue_attempt": item.attempts + 1},
            )

            # Provider-level retries stay inside this queue attempt
            while True:
                try:
                    sent = await self._send(address, notification.title, notification.message)
                except SendError as e:
                    error_message = str(e)
                    if e.kind == ErrorKind.PERMANENT:
                        await tracker.mark_bounced(record.id, error_message)
                        log.warning("delivery_bounced", delivery_id=record.id, error=error_message)
                        return await self._report_failure(queue, item, error_message, ErrorKind.PERMANENT)

                    failed = await tracker.mark_failed(record.id, error_message)
                    if failed is None or failed.retry_count >= failed.max_retries:
                        return await self._report_failure(queue, item, error_message, ErrorKind.TRANSIENT)
                    await self.sleep(self.settings.DELIVERY_RETRY_DELAY_SECONDS)
                    if not await self._renew_lease(queue, item):
                        log.warning("queue_lease_lost", stage="before_retry", delivery_id=record.id)
                        return ItemOutcome.LEASE_LOST
                    continue

                await tracker.mark_sent(record.id, sent.provider_message_id)
                notification.sent_at = self.clock()
                await db.commit()
                completed = await self._with_db_timeout(queue.report_success(item.id, self.worker_id))
                if completed is None:
                    log.warning("queue_lease_lost", delivery_id=record.id)
                    return ItemOutcome.LEASE_LOST
                return ItemOutcome.SUCCEEDED

    async def _send(self, to_address: str, subject: str, body: str) -> SendResult:
        """Call the channel under the send timeout; any error becomes a SendError."""
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.channel.send(to_address, subject, body),
                timeout=self.settings.NOTIFY_SEND_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            track_send("timeout", time.monotonic() - started)
            raise TransientSendError(
                f"send timed out after {self.settings.NOTIFY_SEND_TIMEOUT_SECONDS}s"
            ) from e
        except SendError as e:
            track_send(e.kind.value, time.monotonic() - started)
            raise
        except Exception as e:  # noqa: BLE001 - third-party channels may raise anything
            track_send("error", time.monotonic() - started)
            raise TransientSendError(str(e) or type(e).__name__) from e
        track_send("sent", time.monotonic() - started)
        return result

    async def _report_failure(
        self,
        queue: QueueManager,
        item: QueueItem,
        error_message: str,
        kind: ErrorKind,
    ) -> ItemOutcome:
        if kind == ErrorKind.PERMANENT and self.settings.NOTIFY_CANCEL_ON_PERMANENT_FAILURE:
            cancelled = await self._with_db_timeout(queue.cancel(item.id))
            return ItemOutcome.CANCELLED if cancelled is not None else ItemOutcome.LEASE_LOST

        retry_at = self.retry_policy.next_retry_at(item.attempts, self.clock())
        updated = await self._with_db_timeout(
            queue.report_failure(item.id, error_message, self.worker_id, retry_at=retry_at)
        )
        if updated is None:
            self.log.warning("queue_lease_lost", queue_item_id=item.id)
            return ItemOutcome.LEASE_LOST
        if updated.status == QueueStatus.FAILED:
            capture_message(
                f"Notification queue item {item.id} exhausted after {updated.attempts} attempts",
                level="warning",
                worker_id=self.worker_id,
                queue_item_id=item.id,
            )
            return ItemOutcome.FAILED
        return ItemOutcome.RETRYING

    async def _renew_lease(self, queue: QueueManager, item: QueueItem) -> bool:
        renewed = await self._with_db_timeout(queue.renew_lease(item.id, self.worker_id))
        return renewed is not None

    async def _with_db_timeout(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.settings.NOTIFY_DB_TIMEOUT_SECONDS)
