"""
Queue item model for notification dispatch.

One row per dispatch request. The row is the unit of concurrency control:
workers coordinate only through its status and worker_id columns.
"""
import enum
from datetime import datetime
from typing import Any
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, CheckConstraint, text
from sqlalchemy.orm import Mapped, mapped_column
from lms_notify.models.base import Base, TimestampMixin, JSONType, enum_type


class QueueStatus(str, enum.Enum):
    """Queue item status enum."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_QUEUE_STATUSES


TERMINAL_QUEUE_STATUSES = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED}
)


class QueueItem(Base, TimestampMixin):
    """
    Queue item for an outgoing notification email.
    
    worker_id is set if and only if status is PROCESSING.
    """
    __tablename__ = "notification_queue"
    __table_args__ = (
        CheckConstraint("priority >= 1 AND priority <= 10", name="ck_notification_queue_priority"),
        CheckConstraint("attempts >= 0", name="ck_notification_queue_attempts"),
        CheckConstraint("max_attempts >= 1", name="ck_notification_queue_max_attempts"),
        Index(
            "ix_notification_queue_claimable",
            "priority",
            "scheduled_for",
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index(
            "ix_notification_queue_processing",
            "processing_started_at",
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
        Index(
            "ix_notification_queue_worker",
            "worker_id",
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("notifications.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    status: Mapped[QueueStatus] = mapped_column(
        enum_type(QueueStatus),
        nullable=False,
        default=QueueStatus.PENDING,
        index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    queue_metadata: Mapped[dict[str, Any] | None] = mapped_column("queue_metadata", JSONType, nullable=True)

    def __repr__(self):
        return f"<QueueItem(id={self.id}, notification_id={self.notification_id}, status={self.status})>"
