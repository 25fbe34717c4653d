"""
Notification service: the producer side of the pipeline.

Creates notification records and hands them to the queue.
"""
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lms_notify.config import settings
from lms_notify.errors import NotificationValidationError
from lms_notify.models.notification import Notification, NotificationType, RecipientType
from lms_notify.models.queue_item import QueueItem
from lms_notify.services.queue_manager import QueueManager


# Default queue priority per notification type (1 = most urgent)
TYPE_PRIORITIES = {
    NotificationType.OVERDUE_REMINDER: 2,
    NotificationType.FINE_NOTICE: 2,
    NotificationType.BOOK_AVAILABLE: 3,
    NotificationType.DUE_SOON: 5,
}


class NotificationService:
    """Service for creating and dispatching notifications."""

    def __init__(self, db: AsyncSession, queue: QueueManager | None = None):
        self.db = db
        self.queue = queue or QueueManager(db)

    async def create_notification(
        self,
        recipient_id: int,
        recipient_type: RecipientType | str,
        notification_type: NotificationType | str,
        title: str,
        message: str,
        recipient_email: str | None = None,
    ) -> Notification:
        """
        Create a notification record.

        Raises:
            NotificationValidationError: on unknown types or empty content
        """
        try:
            recipient_type = RecipientType(recipient_type)
        except ValueError:
            raise NotificationValidationError(f"invalid recipient type: {recipient_type}")
        try:
            notification_type = NotificationType(notification_type)
        except ValueError:
            raise NotificationValidationError(f"invalid notification type: {notification_type}")
        if recipient_id <= 0:
            raise NotificationValidationError("recipient ID must be positive")
        if not title or len(title) > 255:
            raise NotificationValidationError("title must be between 1 and 255 characters")
        if not message:
            raise NotificationValidationError("message cannot be empty")

        notification = Notification(
            recipient_id=recipient_id,
            recipient_type=recipient_type,
            recipient_email=recipient_email,
            type=notification_type,
            title=title,
            message=message,
        )
        self.db.add(notification)
        await self.db.commit()
        await self.db.refresh(notification)
        return notification

    async def dispatch(
        self,
        notification: Notification,
        priority: int | None = None,
        scheduled_for: datetime | None = None,
        max_attempts: int | None = None,
        email_address: str | None = None,
    ) -> QueueItem:
        """
        Enqueue a notification for email delivery.

        The target address goes into the queue metadata; without one the
        worker falls back to notification.recipient_email.
        """
        if priority is None:
            priority = TYPE_PRIORITIES.get(notification.type, settings.NOTIFY_DEFAULT_PRIORITY)
        if max_attempts is None:
            max_attempts = settings.NOTIFY_DEFAULT_MAX_ATTEMPTS
        metadata = {"notification_type": notification.type.value}
        if email_address:
            metadata["email_address"] = email_address
        return await self.queue.enqueue(
            notification_id=notification.id,
            priority=priority,
            scheduled_for=scheduled_for,
            max_attempts=max_attempts,
            metadata=metadata,
        )

    async def get_notification(self, notification_id: int) -> Notification | None:
        """Get notification by ID."""
        stmt = select(Notification).where(Notification.id == notification_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
