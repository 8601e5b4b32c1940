from datetime import datetime, timezone
from typing import List
from bson import ObjectId
from pymongo import ASCENDING
import logging

logger = logging.getLogger(__name__)


class StreamRegistry:
    """
    Durable chat id -> stream ids mapping.

    A record means a generation was started for the chat, not that it
    succeeded. Records are only ever appended.
    """

    def __init__(self, db):
        self.db = db

    async def create_stream_id(self, chat_id: str) -> str:
        # ObjectIds grow monotonically, so they also order streams created
        # within the same millisecond
        stream_id = str(ObjectId())
        await self.db.streams.insert_one({
            "_id": stream_id,
            "chat_id": chat_id,
            "created_at": datetime.now(timezone.utc),
        })
        logger.debug(f"Registered stream {stream_id} for chat {chat_id}")
        return stream_id

    async def list_stream_ids(self, chat_id: str) -> List[str]:
        """Stream ids for a chat, oldest first"""
        cursor = self.db.streams.find({"chat_id": chat_id}, {"_id": 1})
        cursor.sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        return [doc["_id"] async for doc in cursor]
