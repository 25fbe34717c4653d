"""
Shared fixtures: a throwaway SQLite database per test and a controllable clock.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from lms_notify.models.base import Base
from lms_notify.models.notification import Notification  # noqa: F401
from lms_notify.models.queue_item import QueueItem
from lms_notify.models.delivery import DeliveryRecord  # noqa: F401
from lms_notify.services.delivery_tracker import DeliveryTracker
from lms_notify.services.notification_service import NotificationService
from lms_notify.services.queue_manager import QueueManager


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def assert_worker_invariant(item: QueueItem) -> None:
    """worker_id is set if and only if the item is processing."""
    assert (item.worker_id is not None) == (item.status == "processing")


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
async def engine(tmp_path):
    # File-backed so concurrent sessions see each other's commits
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'notify.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def queue(db, clock):
    return QueueManager(db, clock)


@pytest.fixture
def tracker(db, clock):
    return DeliveryTracker(db, clock)


@pytest.fixture
def make_notification(db):
    async def _make(
        recipient_email: str | None = "reader@example.com",
        notification_type: str = "due_soon",
        title: str = "Book due soon",
        message: str = "Your book is due in 2 days.",
    ):
        return await NotificationService(db).create_notification(
            recipient_id=1,
            recipient_type="student",
            notification_type=notification_type,
            title=title,
            message=message,
            recipient_email=recipient_email,
        )
    return _make


@pytest.fixture
async def notification(make_notification):
    return await make_notification()
