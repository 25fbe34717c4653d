"""
Notification model.

The domain fact behind every queued email: who is notified, about what, and
why. Produced by the notification service; the delivery pipeline only reads
it and stamps sent_at.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, Boolean, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from lms_notify.models.base import Base, enum_type


class NotificationType(str, enum.Enum):
    """Notification type enum."""
    OVERDUE_REMINDER = "overdue_reminder"
    DUE_SOON = "due_soon"
    BOOK_AVAILABLE = "book_available"
    FINE_NOTICE = "fine_notice"


class RecipientType(str, enum.Enum):
    """Recipient type enum."""
    STUDENT = "student"
    LIBRARIAN = "librarian"


class Notification(Base):
    """
    Notification record.
    
    title becomes the email subject and message the email body.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient", "recipient_id", "recipient_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_id: Mapped[int] = mapped_column(Integer, nullable=False)
    recipient_type: Mapped[RecipientType] = mapped_column(
        enum_type(RecipientType),
        nullable=False
    )
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    type: Mapped[NotificationType] = mapped_column(
        enum_type(NotificationType),
        nullable=False,
        index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    def __repr__(self):
        return f"<Notification(id={self.id}, type={self.type}, recipient_id={self.recipient_id})>"
