"""
Email delivery model.

Ledger of provider-level delivery attempts, kept apart from queue retry
bookkeeping so provider flakiness and queue exhaustion can be told apart.
"""
import enum
from datetime import datetime
from typing import Any
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from lms_notify.models.base import Base, TimestampMixin, JSONType, enum_type


class DeliveryStatus(str, enum.Enum):
    """Delivery status enum."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"


# Only these are removed by retention cleanup
TERMINAL_DELIVERY_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.BOUNCED})


class DeliveryRecord(Base, TimestampMixin):
    """Delivery attempt of one notification to one email address."""
    __tablename__ = "email_deliveries"
    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="ck_email_deliveries_retry_count"),
        CheckConstraint("max_retries >= 0", name="ck_email_deliveries_max_retries"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("notifications.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    email_address: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[DeliveryStatus] = mapped_column(
        enum_type(DeliveryStatus),
        nullable=False,
        default=DeliveryStatus.PENDING,
        index=True
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    delivery_metadata: Mapped[dict[str, Any] | None] = mapped_column("delivery_metadata", JSONType, nullable=True)

    def __repr__(self):
        return f"<DeliveryRecord(id={self.id}, email={self.email_address}, status={self.status})>"
