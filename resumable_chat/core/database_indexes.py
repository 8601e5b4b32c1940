"""
Database indexes for optimal query performance.

Run this module once after setting up the database to create indexes.
You can run it with: python -m resumable_chat.core.database_indexes
"""

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from resumable_chat.core.config import settings
import asyncio
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def create_indexes(db):
    """Create all necessary database indexes"""
    logger.info("Creating database indexes...")

    # Users collection indexes
    await db.users.create_index("email", unique=True)
    logger.info("✓ Created indexes for 'users' collection")

    # Chats collection indexes
    await db.chats.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("✓ Created indexes for 'chats' collection")

    # Messages are listed per chat in creation order and counted per chat for rate limits
    await db.messages.create_index([("chat_id", ASCENDING), ("created_at", ASCENDING)])
    await db.messages.create_index([("chat_id", ASCENDING), ("role", ASCENDING), ("created_at", ASCENDING)])
    logger.info("✓ Created indexes for 'messages' collection")

    # Stream records are listed per chat in creation order
    await db.streams.create_index([("chat_id", ASCENDING), ("created_at", ASCENDING)])
    logger.info("✓ Created indexes for 'streams' collection")

    logger.info("All indexes created successfully!")


async def main():
    client = AsyncIOMotorClient(settings.MONGODB_URL)
    try:
        await create_indexes(client[settings.DATABASE_NAME])
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(main())
