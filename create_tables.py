"""
Script to create all database tables.

This script creates all tables defined in the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
from jobqueue.database import engine
from jobqueue.models.base import Base
from jobqueue.models.job import Job
from jobqueue.models.notification import Notification, NotificationInbox, NotificationTemplate
from jobqueue.models.dispatch_attempt import DispatchAttempt
from jobqueue.models.destination import PushToken, WebhookSubscription, EmailSuppression
from jobqueue.models.payout import PayoutBatch, PayoutItem


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


async def main():
    """Main entry point."""
    print("Creating database tables...")
    await create_all_tables()
    await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
