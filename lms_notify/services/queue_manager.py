"""
Queue manager for notification dispatch.

Every mutation is one conditional UPDATE ... RETURNING, so a transition
either happens completely or not at all. Illegal transitions return None
instead of raising; only database errors propagate.
"""
from datetime import datetime, timedelta
from typing import Any, Callable

from pydantic import BaseModel
from sqlalchemy import select, update, delete, func, case, literal
from sqlalchemy.ext.asyncio import AsyncSession

from lms_notify.errors import QueueValidationError
from lms_notify.logging_config import get_logger
from lms_notify.models.base import utc_now, ensure_utc, resolve_window
from lms_notify.models.queue_item import QueueItem, QueueStatus, TERMINAL_QUEUE_STATUSES
from lms_notify.routes.metrics import (
    track_enqueued,
    track_claimed,
    track_completed,
    track_failed,
    track_cancelled,
    track_swept,
    track_purged,
)


MIN_PRIORITY = 1
MAX_PRIORITY = 10
MAX_ATTEMPTS_CEILING = 10
# Enqueue rejects schedules further in the past than this
SCHEDULE_PAST_TOLERANCE = timedelta(hours=1)

logger = get_logger(component="queue_manager")


class QueueStats(BaseModel):
    """Queue statistics over items created in a window."""
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    average_processing_time_seconds: float | None = None
    average_attempts: float | None = None
    window_start: datetime
    window_end: datetime


class QueueManager:
    """Service for managing the notification queue."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    def _now(self, now: datetime | None = None) -> datetime:
        return ensure_utc(now) if now is not None else self.clock()

    def validate_request(
        self,
        notification_id: int,
        priority: int,
        max_attempts: int,
        scheduled_for: datetime,
        now: datetime,
    ) -> None:
        """Raise QueueValidationError if the request may not enter the queue."""
        if notification_id is None or notification_id <= 0:
            raise QueueValidationError("notification ID must be positive")
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise QueueValidationError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}"
            )
        if not 1 <= max_attempts <= MAX_ATTEMPTS_CEILING:
            raise QueueValidationError(
                f"max attempts must be between 1 and {MAX_ATTEMPTS_CEILING}"
            )
        if scheduled_for < now - SCHEDULE_PAST_TOLERANCE:
            raise QueueValidationError("scheduled time cannot be more than 1 hour in the past")

    async def enqueue(
        self,
        notification_id: int,
        priority: int = 5,
        scheduled_for: datetime | None = None,
        max_attempts: int = 3,
        metadata: dict[str, Any] | None = None,
    ) -> QueueItem:
        """
        Create a new queue item in PENDING status.

        Args:
            notification_id: Notification to dispatch
            priority: 1 (highest) to 10 (lowest)
            scheduled_for: Earliest claim time (default: now)
            max_attempts: Queue-level attempts before the item fails
            metadata: Opaque payload, e.g. the target email address

        Returns:
            Newly created QueueItem

        Raises:
            QueueValidationError: if the request is invalid
        """
        now = self._now()
        scheduled_for = ensure_utc(scheduled_for) if scheduled_for is not None else now
        self.validate_request(notification_id, priority, max_attempts, scheduled_for, now)

        item = QueueItem(
            notification_id=notification_id,
            priority=priority,
            scheduled_for=scheduled_for,
            attempts=0,
            max_attempts=max_attempts,
            status=QueueStatus.PENDING,
            queue_metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        self.db.add(item)
        await self.db.commit()
        await self.db.refresh(item)

        track_enqueued(priority)
        logger.info(
            "queue_item_enqueued",
            queue_item_id=item.id,
            notification_id=notification_id,
            priority=priority,
            scheduled_for=scheduled_for.isoformat(),
        )
        return item

    async def claim_batch(
        self,
        worker_id: str,
        limit: int,
        now: datetime | None = None,
    ) -> list[QueueItem]:
        """
        Atomically claim up to `limit` claimable items for `worker_id`.

        Selection and the PROCESSING transition happen in one statement.
        Rows locked by a concurrent claim are skipped, so no two callers
        ever receive the same item.

        Returns:
            Claimed items ordered by priority, then scheduled_for
        """
        if limit <= 0:
            return []
        now = self._now(now)

        candidates = (
            select(QueueItem.id)
            .where(
                QueueItem.status == QueueStatus.PENDING,
                QueueItem.scheduled_for <= now,
            )
            .order_by(
                QueueItem.priority.asc(),
                QueueItem.scheduled_for.asc(),
                QueueItem.id.asc(),
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(QueueItem)
            .where(
                QueueItem.id.in_(candidates),
                QueueItem.status == QueueStatus.PENDING,
            )
            .values(
                status=QueueStatus.PROCESSING,
                processing_started_at=now,
                worker_id=worker_id,
                updated_at=now,
            )
            .returning(QueueItem)
        )
        items = await self._execute_returning(stmt)
        # RETURNING order is not guaranteed
        items.sort(key=lambda item: (item.priority, item.scheduled_for, item.id))

        if items:
            track_claimed(worker_id, len(items))
            logger.info(
                "queue_batch_claimed",
                worker_id=worker_id,
                count=len(items),
                queue_item_ids=[item.id for item in items],
            )
        return items

    async def renew_lease(
        self,
        item_id: int,
        worker_id: str,
        now: datetime | None = None,
    ) -> QueueItem | None:
        """
        Restart the lease of a PROCESSING item still owned by worker_id.

        Called right before each send so the lease clock measures one
        item's processing, not the time the item waited in its batch.

        Returns:
            Updated item, or None if the lease was lost
        """
        now = self._now(now)
        stmt = (
            update(QueueItem)
            .where(*self._owned_by(item_id, worker_id))
            .values(processing_started_at=now, updated_at=now)
            .returning(QueueItem)
        )
        item = await self._execute_returning_one(stmt)
        if item is None:
            logger.warning("queue_lease_renewal_failed", queue_item_id=item_id, worker_id=worker_id)
        return item

    async def report_success(
        self,
        item_id: int,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> QueueItem | None:
        """
        Mark a PROCESSING item as COMPLETED.

        Returns:
            Updated item, or None if the item is not processing
            (or not owned by worker_id when given)
        """
        now = self._now(now)
        stmt = (
            update(QueueItem)
            .where(*self._owned_by(item_id, worker_id))
            .values(
                status=QueueStatus.COMPLETED,
                processing_completed_at=now,
                worker_id=None,
                updated_at=now,
            )
            .returning(QueueItem)
        )
        item = await self._execute_returning_one(stmt)
        if item is None:
            logger.warning("queue_report_ignored", queue_item_id=item_id, worker_id=worker_id, outcome="success")
            return None

        track_completed()
        logger.info("queue_item_completed", queue_item_id=item_id, attempts=item.attempts)
        return item

    async def report_failure(
        self,
        item_id: int,
        error_message: str,
        worker_id: str | None = None,
        retry_at: datetime | None = None,
        now: datetime | None = None,
    ) -> QueueItem | None:
        """
        Record a failed attempt on a PROCESSING item.

        attempts is incremented in the same statement that picks the next
        status: FAILED once attempts reaches max_attempts, otherwise back to
        PENDING. retry_at, when given, becomes the new scheduled_for of a
        retryable item.

        Returns:
            Updated item, or None if the item is not processing
            (or not owned by worker_id when given)
        """
        now = self._now(now)
        exhausted = QueueItem.attempts + 1 >= QueueItem.max_attempts
        values: dict[str, Any] = {
            "attempts": QueueItem.attempts + 1,
            "status": case(
                (exhausted, QueueStatus.FAILED.value),
                else_=QueueStatus.PENDING.value,
            ),
            "error_message": error_message,
            "processing_completed_at": now,
            "worker_id": None,
            "updated_at": now,
        }
        if retry_at is not None:
            values["scheduled_for"] = case(
                (exhausted, QueueItem.scheduled_for),
                else_=literal(ensure_utc(retry_at), QueueItem.scheduled_for.type),
            )

        stmt = (
            update(QueueItem)
            .where(*self._owned_by(item_id, worker_id))
            .values(**values)
            .returning(QueueItem)
        )
        item = await self._execute_returning_one(stmt)
        if item is None:
            logger.warning("queue_report_ignored", queue_item_id=item_id, worker_id=worker_id, outcome="failure")
            return None

        is_exhausted = item.status == QueueStatus.FAILED
        track_failed(is_exhausted)
        if is_exhausted:
            logger.warning(
                "queue_item_exhausted",
                queue_item_id=item_id,
                attempts=item.attempts,
                max_attempts=item.max_attempts,
                error=error_message,
                error_kind="exhausted",
            )
        else:
            logger.warning(
                "queue_item_failed",
                queue_item_id=item_id,
                attempts=item.attempts,
                max_attempts=item.max_attempts,
                error=error_message,
            )
        return item

    async def cancel(self, item_id: int, now: datetime | None = None) -> QueueItem | None:
        """
        Cancel a PENDING or PROCESSING item.

        Returns:
            Updated item, or None if the item is missing or already terminal
        """
        now = self._now(now)
        stmt = (
            update(QueueItem)
            .where(
                QueueItem.id == item_id,
                QueueItem.status.in_([QueueStatus.PENDING, QueueStatus.PROCESSING]),
            )
            .values(
                status=QueueStatus.CANCELLED,
                processing_completed_at=now,
                worker_id=None,
                updated_at=now,
            )
            .returning(QueueItem)
        )
        item = await self._execute_returning_one(stmt)
        if item is None:
            return None

        track_cancelled()
        logger.info("queue_item_cancelled", queue_item_id=item_id)
        return item

    async def sweep_stuck(self, older_than: datetime) -> int:
        """
        Return PROCESSING items whose lease started before `older_than` to PENDING.

        attempts is left untouched: a crashed worker never reported an outcome.

        Returns:
            Number of items reclaimed
        """
        older_than = ensure_utc(older_than)
        stmt = (
            update(QueueItem)
            .where(
                QueueItem.status == QueueStatus.PROCESSING,
                QueueItem.processing_started_at < older_than,
            )
            .values(
                status=QueueStatus.PENDING,
                worker_id=None,
                processing_started_at=None,
                updated_at=self.clock(),
            )
            .returning(QueueItem.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        rows = result.all()
        await self.db.commit()

        count = len(rows)
        if count:
            track_swept(count)
            logger.warning(
                "queue_items_swept",
                count=count,
                older_than=older_than.isoformat(),
                queue_item_ids=[row.id for row in rows],
            )
        return count

    async def stats(self, start: datetime | timedelta, end: datetime | None = None) -> QueueStats:
        """
        Compute queue statistics for items created in [start, end].

        start may instead be a timedelta, meaning the window ending now.

        total always equals the sum of the per-status counts.
        """
        start, end = resolve_window(start, end, self.clock())
        in_window = (QueueItem.created_at >= start, QueueItem.created_at <= end)

        counts_stmt = (
            select(
                QueueItem.status,
                func.count(QueueItem.id),
                func.coalesce(func.sum(QueueItem.attempts), 0),
            )
            .where(*in_window)
            .group_by(QueueItem.status)
        )
        stats = QueueStats(window_start=start, window_end=end)
        attempts_sum = 0
        for status, count, attempts in (await self.db.execute(counts_stmt)).all():
            setattr(stats, QueueStatus(status).value, int(count))
            attempts_sum += int(attempts)
        stats.total = (
            stats.pending + stats.processing + stats.completed + stats.failed + stats.cancelled
        )
        if stats.total:
            stats.average_attempts = attempts_sum / stats.total

        # Durations are computed here to stay portable across dialects
        timing_stmt = select(
            QueueItem.processing_started_at,
            QueueItem.processing_completed_at,
        ).where(
            *in_window,
            QueueItem.processing_started_at.is_not(None),
            QueueItem.processing_completed_at.is_not(None),
        )
        durations = [
            (completed - started).total_seconds()
            for started, completed in (await self.db.execute(timing_stmt)).all()
        ]
        if durations:
            stats.average_processing_time_seconds = sum(durations) / len(durations)
        return stats

    async def purge_old(self, older_than: datetime) -> int:
        """
        Delete terminal items created before `older_than`.

        Returns:
            Number of items deleted
        """
        older_than = ensure_utc(older_than)
        stmt = (
            delete(QueueItem)
            .where(
                QueueItem.created_at < older_than,
                QueueItem.status.in_(list(TERMINAL_QUEUE_STATUSES)),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        count = result.rowcount or 0
        track_purged(count)
        logger.info("queue_items_purged", count=count, older_than=older_than.isoformat())
        return count

    async def requeue(
        self,
        item_id: int,
        max_attempts: int | None = None,
        scheduled_for: datetime | None = None,
    ) -> QueueItem | None:
        """
        Re-enqueue the notification of a FAILED or CANCELLED item.

        The old item stays as history; a fresh item with attempts=0 is created.

        Returns:
            New item, or None if the old item is missing or not re-queueable
        """
        old = await self.get(item_id)
        if old is None or old.status not in (QueueStatus.FAILED, QueueStatus.CANCELLED):
            return None
        item = await self.enqueue(
            notification_id=old.notification_id,
            priority=old.priority,
            scheduled_for=scheduled_for,
            max_attempts=max_attempts if max_attempts is not None else old.max_attempts,
            metadata=old.queue_metadata,
        )
        logger.info("queue_item_requeued", queue_item_id=item_id, new_queue_item_id=item.id)
        return item

    async def get(self, item_id: int) -> QueueItem | None:
        """Get queue item by ID."""
        stmt = (
            select(QueueItem)
            .where(QueueItem.id == item_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_status(
        self,
        status: QueueStatus,
        limit: int = 50,
        offset: int = 0,
    ) -> list[QueueItem]:
        """Get items in a status, newest first."""
        stmt = (
            select(QueueItem)
            .where(QueueItem.status == status)
            .order_by(QueueItem.created_at.desc(), QueueItem.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_by_notification(self, notification_id: int) -> list[QueueItem]:
        """Get all queue items of a notification, newest first."""
        stmt = (
            select(QueueItem)
            .where(QueueItem.notification_id == notification_id)
            .order_by(QueueItem.created_at.desc(), QueueItem.id.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_stuck(self, older_than: datetime) -> list[QueueItem]:
        """Get PROCESSING items whose lease started before `older_than`."""
        stmt = select(QueueItem).where(
            QueueItem.status == QueueStatus.PROCESSING,
            QueueItem.processing_started_at < ensure_utc(older_than),
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def queue_length(self) -> int:
        """Number of PENDING items."""
        stmt = select(func.count(QueueItem.id)).where(QueueItem.status == QueueStatus.PENDING)
        result = await self.db.execute(stmt)
        return int(result.scalar_one())

    def _owned_by(self, item_id: int, worker_id: str | None) -> list:
        conditions = [
            QueueItem.id == item_id,
            QueueItem.status == QueueStatus.PROCESSING,
        ]
        if worker_id is not None:
            conditions.append(QueueItem.worker_id == worker_id)
        return conditions

    async def _execute_returning(self, stmt) -> list[QueueItem]:
        orm_stmt = (
            select(QueueItem)
            .from_statement(stmt)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(orm_stmt)
        items = list(result.scalars().all())
        await self.db.commit()
        return items

    async def _execute_returning_one(self, stmt) -> QueueItem | None:
        items = await self._execute_returning(stmt)
        return items[0] if items else None
