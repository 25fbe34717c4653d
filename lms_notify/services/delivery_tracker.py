"""
Delivery tracker for outgoing notification email.

Append-mostly ledger of send attempts per notification and address. Its
retry_count counts provider-level failures and is never tied to the queue
item's attempts.
"""
from datetime import datetime, timedelta
from typing import Any, Callable

from pydantic import BaseModel
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from lms_notify.errors import DeliveryValidationError
from lms_notify.logging_config import get_logger
from lms_notify.models.base import utc_now, ensure_utc, resolve_window
from lms_notify.models.delivery import DeliveryRecord, DeliveryStatus, TERMINAL_DELIVERY_STATUSES
from lms_notify.models.notification import Notification, NotificationType
from lms_notify.routes.metrics import track_delivery


logger = get_logger(component="delivery_tracker")

# Status each mark_* call may start from
_SENDABLE = (DeliveryStatus.PENDING, DeliveryStatus.FAILED)
_DELIVERABLE = (DeliveryStatus.PENDING, DeliveryStatus.SENT)
_FAILABLE = (DeliveryStatus.PENDING, DeliveryStatus.SENT, DeliveryStatus.FAILED)
_BOUNCEABLE = (DeliveryStatus.PENDING, DeliveryStatus.SENT, DeliveryStatus.FAILED, DeliveryStatus.DELIVERED)


class DeliveryStats(BaseModel):
    """Delivery statistics over records created in a window."""
    total: int = 0
    pending: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    bounced: int = 0
    average_delivery_time_seconds: float | None = None
    window_start: datetime
    window_end: datetime


class DeliveryHistoryEntry(BaseModel):
    """Delivery record joined with its notification."""
    id: int
    notification_id: int
    email_address: str
    status: DeliveryStatus
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 0
    provider_message_id: str | None = None
    created_at: datetime
    notification_title: str
    notification_type: NotificationType


class DeliveryTracker:
    """Service for tracking email delivery attempts."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    async def begin(
        self,
        notification_id: int,
        email_address: str,
        max_retries: int = 3,
        metadata: dict[str, Any] | None = None,
    ) -> DeliveryRecord:
        """
        Create a PENDING delivery record for a send attempt.

        Raises:
            DeliveryValidationError: on an empty address or negative max_retries
        """
        if notification_id is None or notification_id <= 0:
            raise DeliveryValidationError("notification ID must be positive")
        if not email_address or not email_address.strip():
            raise DeliveryValidationError("email address cannot be empty")
        if max_retries < 0:
            raise DeliveryValidationError("max retries cannot be negative")

        now = self.clock()
        record = DeliveryRecord(
            notification_id=notification_id,
            email_address=email_address.strip(),
            status=DeliveryStatus.PENDING,
            retry_count=0,
            max_retries=max_retries,
            delivery_metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)

        track_delivery(DeliveryStatus.PENDING.value)
        logger.debug("delivery_started", delivery_id=record.id, notification_id=notification_id)
        return record

    async def mark_sent(self, delivery_id: int, provider_message_id: str | None = None) -> DeliveryRecord | None:
        """Provider accepted the message."""
        values: dict[str, Any] = {"sent_at": self.clock()}
        if provider_message_id is not None:
            values["provider_message_id"] = provider_message_id
        return await self._transition(delivery_id, _SENDABLE, DeliveryStatus.SENT, values)

    async def mark_delivered(self, delivery_id: int) -> DeliveryRecord | None:
        """Provider confirmed delivery to the mailbox."""
        return await self._transition(
            delivery_id, _DELIVERABLE, DeliveryStatus.DELIVERED, {"delivered_at": self.clock()}
        )

    async def mark_failed(self, delivery_id: int, error_message: str) -> DeliveryRecord | None:
        """Send attempt failed; counts one provider-level retry."""
        values = {
            "failed_at": self.clock(),
            "error_message": error_message,
            "retry_count": DeliveryRecord.retry_count + 1,
        }
        record = await self._transition(delivery_id, _FAILABLE, DeliveryStatus.FAILED, values)
        if record is not None:
            logger.warning(
                "delivery_failed",
                delivery_id=delivery_id,
                retry_count=record.retry_count,
                max_retries=record.max_retries,
                error=error_message,
            )
        return record

    async def mark_bounced(self, delivery_id: int, error_message: str | None = None) -> DeliveryRecord | None:
        """Hard bounce or permanently invalid address."""
        values: dict[str, Any] = {"failed_at": self.clock()}
        if error_message is not None:
            values["error_message"] = error_message
        return await self._transition(delivery_id, _BOUNCEABLE, DeliveryStatus.BOUNCED, values)

    async def update_provider_info(
        self,
        delivery_id: int,
        provider_message_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> DeliveryRecord | None:
        """Attach the provider's message id and payload without changing status."""
        stmt = (
            update(DeliveryRecord)
            .where(DeliveryRecord.id == delivery_id)
            .values(
                provider_message_id=provider_message_id,
                delivery_metadata=metadata,
                updated_at=self.clock(),
            )
            .returning(DeliveryRecord)
        )
        return await self._execute_returning_one(stmt)

    async def apply_provider_event(
        self,
        provider_message_id: str,
        event: DeliveryStatus,
        error_message: str | None = None,
    ) -> DeliveryRecord | None:
        """
        Apply a provider callback to the record it refers to.

        Args:
            provider_message_id: Correlation id returned by the send channel
            event: DELIVERED, BOUNCED or FAILED

        Returns:
            Updated record, or None if unknown or the transition is illegal
        """
        record = await self.find_by_provider_message_id(provider_message_id)
        if record is None:
            logger.warning("provider_event_unmatched", provider_message_id=provider_message_id, event=event.value)
            return None

        if event == DeliveryStatus.DELIVERED:
            return await self.mark_delivered(record.id)
        if event == DeliveryStatus.BOUNCED:
            return await self.mark_bounced(record.id, error_message)
        if event == DeliveryStatus.FAILED:
            return await self.mark_failed(record.id, error_message or "provider reported failure")
        raise DeliveryValidationError(f"unsupported provider event: {event.value}")

    async def get(self, delivery_id: int) -> DeliveryRecord | None:
        """Get delivery record by ID."""
        stmt = (
            select(DeliveryRecord)
            .where(DeliveryRecord.id == delivery_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_provider_message_id(self, provider_message_id: str) -> DeliveryRecord | None:
        """Most recent record carrying a provider message id."""
        stmt = (
            select(DeliveryRecord)
            .where(DeliveryRecord.provider_message_id == provider_message_id)
            .order_by(DeliveryRecord.id.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_notification(self, notification_id: int) -> list[DeliveryRecord]:
        """All delivery records of a notification, newest first."""
        stmt = (
            select(DeliveryRecord)
            .where(DeliveryRecord.notification_id == notification_id)
            .order_by(DeliveryRecord.created_at.desc(), DeliveryRecord.id.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_pending(self, limit: int = 50) -> list[DeliveryRecord]:
        """Pending records, oldest first."""
        stmt = (
            select(DeliveryRecord)
            .where(DeliveryRecord.status == DeliveryStatus.PENDING)
            .order_by(DeliveryRecord.created_at.asc(), DeliveryRecord.id.asc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_retryable(self, limit: int = 50) -> list[DeliveryRecord]:
        """Failed records that still have provider retries left, oldest first."""
        stmt = (
            select(DeliveryRecord)
            .where(
                DeliveryRecord.status == DeliveryStatus.FAILED,
                DeliveryRecord.retry_count < DeliveryRecord.max_retries,
            )
            .order_by(DeliveryRecord.created_at.asc(), DeliveryRecord.id.asc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def retry_failed(self, limit: int = 50) -> list[DeliveryRecord]:
        """Reset retryable failed records to PENDING."""
        candidates = (
            select(DeliveryRecord.id)
            .where(
                DeliveryRecord.status == DeliveryStatus.FAILED,
                DeliveryRecord.retry_count < DeliveryRecord.max_retries,
            )
            .order_by(DeliveryRecord.created_at.asc(), DeliveryRecord.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(DeliveryRecord)
            .where(
                DeliveryRecord.id.in_(candidates),
                DeliveryRecord.status == DeliveryStatus.FAILED,
            )
            .values(status=DeliveryStatus.PENDING, updated_at=self.clock())
            .returning(DeliveryRecord)
        )
        records = await self._execute_returning(stmt)
        logger.info("deliveries_retried", count=len(records))
        return records

    async def stats(self, start: datetime | timedelta, end: datetime | None = None) -> DeliveryStats:
        """Delivery statistics for records created in [start, end], or in a timedelta ending now."""
        start, end = resolve_window(start, end, self.clock())
        in_window = (DeliveryRecord.created_at >= start, DeliveryRecord.created_at <= end)

        counts_stmt = (
            select(DeliveryRecord.status, func.count(DeliveryRecord.id))
            .where(*in_window)
            .group_by(DeliveryRecord.status)
        )
        stats = DeliveryStats(window_start=start, window_end=end)
        for status, count in (await self.db.execute(counts_stmt)).all():
            setattr(stats, DeliveryStatus(status).value, int(count))
        stats.total = stats.pending + stats.sent + stats.delivered + stats.failed + stats.bounced

        timing_stmt = select(DeliveryRecord.sent_at, DeliveryRecord.delivered_at).where(
            *in_window,
            DeliveryRecord.sent_at.is_not(None),
            DeliveryRecord.delivered_at.is_not(None),
        )
        durations = [
            (delivered - sent).total_seconds()
            for sent, delivered in (await self.db.execute(timing_stmt)).all()
        ]
        if durations:
            stats.average_delivery_time_seconds = sum(durations) / len(durations)
        return stats

    async def history(self, email_address: str, limit: int = 20, offset: int = 0) -> list[DeliveryHistoryEntry]:
        """Deliveries to an address, newest first, with notification title and type."""
        stmt = (
            select(DeliveryRecord, Notification.title, Notification.type)
            .join(Notification, DeliveryRecord.notification_id == Notification.id)
            .where(DeliveryRecord.email_address == email_address)
            .order_by(DeliveryRecord.created_at.desc(), DeliveryRecord.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return [
            DeliveryHistoryEntry(
                id=record.id,
                notification_id=record.notification_id,
                email_address=record.email_address,
                status=record.status,
                sent_at=record.sent_at,
                delivered_at=record.delivered_at,
                failed_at=record.failed_at,
                error_message=record.error_message,
                retry_count=record.retry_count,
                max_retries=record.max_retries,
                provider_message_id=record.provider_message_id,
                created_at=record.created_at,
                notification_title=title,
                notification_type=notification_type,
            )
            for record, title, notification_type in result.all()
        ]

    async def purge_old(self, older_than: datetime) -> int:
        """
        Delete DELIVERED and BOUNCED records created before `older_than`.

        Returns:
            Number of records deleted
        """
        older_than = ensure_utc(older_than)
        stmt = (
            delete(DeliveryRecord)
            .where(
                DeliveryRecord.created_at < older_than,
                DeliveryRecord.status.in_(list(TERMINAL_DELIVERY_STATUSES)),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        count = result.rowcount or 0
        logger.info("deliveries_purged", count=count, older_than=older_than.isoformat())
        return count

    async def _transition(
        self,
        delivery_id: int,
        from_statuses: tuple[DeliveryStatus, ...],
        to_status: DeliveryStatus,
        values: dict[str, Any],
    ) -> DeliveryRecord | None:
        stmt = (
            update(DeliveryRecord)
            .where(
                DeliveryRecord.id == delivery_id,
                DeliveryRecord.status.in_(from_statuses),
            )
            .values(status=to_status, updated_at=self.clock(), **values)
            .returning(DeliveryRecord)
        )
        record = await self._execute_returning_one(stmt)
        if record is None:
            logger.warning("delivery_transition_ignored", delivery_id=delivery_id, to_status=to_status.value)
            return None

        track_delivery(to_status.value)
        logger.info("delivery_status_updated", delivery_id=delivery_id, status=to_status.value)
        return record

    async def _execute_returning(self, stmt) -> list[DeliveryRecord]:
        orm_stmt = (
            select(DeliveryRecord)
            .from_statement(stmt)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(orm_stmt)
        records = list(result.scalars().all())
        await self.db.commit()
        return records

    async def _execute_returning_one(self, stmt) -> DeliveryRecord | None:
        records = await self._execute_returning(stmt)
        return records[0] if records else None
