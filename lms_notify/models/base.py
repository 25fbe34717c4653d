"""
Base model classes for the notification pipeline.

Provides SQLAlchemy declarative base, shared mixins and column types.
"""
from datetime import datetime, timedelta, timezone
from sqlalchemy import DateTime, JSON, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps to models.
    
    Uses server-side defaults for automatic timestamp management.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


def enum_type(enum_cls) -> SQLEnum:
    """String-backed enum column storing the member values."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_window(
    start: datetime | timedelta,
    end: datetime | None,
    now: datetime,
) -> tuple[datetime, datetime]:
    """Turn a (start, end) pair or a timedelta ending now into UTC bounds."""
    if isinstance(start, timedelta):
        return now - start, now
    return ensure_utc(start), ensure_utc(end) if end is not None else now
