"""
Script to create all database tables.

Creates the notifications, notification_queue and email_deliveries tables
with their constraints and partial indexes.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
import sys

from lms_notify.database import engine
from lms_notify.models.base import Base
# Import all models to register them with Base
from lms_notify.models.notification import Notification  # noqa: F401
from lms_notify.models.queue_item import QueueItem  # noqa: F401
from lms_notify.models.delivery import DeliveryRecord  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main(drop: bool = False):
    """Main entry point. Pass --drop to recreate from scratch."""
    if drop:
        await drop_all_tables()
    print("Creating database tables...")
    await create_all_tables()
    await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main(drop="--drop" in sys.argv[1:]))
