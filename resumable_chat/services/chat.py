from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from pymongo import ASCENDING, DESCENDING
from resumable_chat.core.exceptions import ForbiddenError, NotFoundError
from resumable_chat.schemas.chat import Chat, Message, TextPart, Visibility
import logging
import re

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 80


def _as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def ensure_can_access(chat: Chat, requester) -> None:
    """Private chats are only accessible to their owner"""
    if chat.visibility != Visibility.PUBLIC and not requester.owns(chat):
        raise ForbiddenError("chat")


def clean_title(text: str) -> str:
    text = re.sub(r"\s+", " ", text.replace("\"", "").replace(":", "")).strip()
    return text[:MAX_TITLE_LENGTH]


def title_from_message(parts) -> str:
    """Fallback title: the message text itself, truncated"""
    text = " ".join(part.text for part in parts if isinstance(part, TextPart))
    text = re.sub(r"\s+", " ", text).strip()
    return text[:MAX_TITLE_LENGTH] or "New chat"


class ChatService:
    """Message store: chats and their append-only messages"""

    def __init__(self, db):
        self.db = db

    async def save_chat(self, chat_id: str, user_id: str, title: str, visibility: Visibility) -> Chat:
        """Create a new chat"""
        chat = Chat(id=chat_id, user_id=user_id, title=title, visibility=visibility)
        await self.db.chats.insert_one({
            "_id": chat.id,
            "user_id": chat.user_id,
            "title": chat.title,
            "visibility": chat.visibility.value,
            "created_at": chat.created_at,
        })
        return chat

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        """Get a chat by ID"""
        doc = await self.db.chats.find_one({"_id": chat_id})
        if doc:
            return self._to_chat(doc)
        return None

    async def delete_chat(self, chat_id: str) -> Optional[Chat]:
        """Delete a chat together with its messages and stream records"""
        chat = await self.get_chat(chat_id)
        if not chat:
            return None

        await self.db.messages.delete_many({"chat_id": chat_id})
        await self.db.streams.delete_many({"chat_id": chat_id})
        await self.db.chats.delete_one({"_id": chat_id})
        logger.info(f"Deleted chat {chat_id}")
        return chat

    async def append(self, messages: List[Message]) -> None:
        """Persist messages. Messages are never updated once written."""
        if not messages:
            return
        await self.db.messages.insert_many([self._to_document(m) for m in messages])

    async def list_by_chat(self, chat_id: str) -> List[Message]:
        cursor = self.db.messages.find({"chat_id": chat_id})
        cursor.sort("created_at", ASCENDING)

        messages = []
        async for doc in cursor:
            messages.append(self._to_message(doc))
        return messages

    async def count_user_messages_since(self, user_id: str, hours: int = 24) -> int:
        """Count messages the user sent across all their chats in the last `hours`"""
        chat_ids = []
        async for doc in self.db.chats.find({"user_id": user_id}, {"_id": 1}):
            chat_ids.append(doc["_id"])
        if not chat_ids:
            return 0

        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        return await self.db.messages.count_documents({
            "chat_id": {"$in": chat_ids},
            "role": "user",
            "created_at": {"$gte": since},
        })

    async def list_chats_by_user(
        self,
        user_id: str,
        limit: int,
        starting_after: Optional[str] = None,
        ending_before: Optional[str] = None,
    ) -> Tuple[List[Chat], bool]:
        """
        List a user's chats, newest first, with cursor pagination.

        starting_after returns chats created after the given chat,
        ending_before returns chats created before it.
        Returns the page and whether more chats exist beyond it.
        """
        query = {"user_id": user_id}
        if starting_after:
            cursor_chat = await self.get_chat(starting_after)
            if not cursor_chat:
                raise NotFoundError("database", f"Chat with id {starting_after} not found")
            query["created_at"] = {"$gt": cursor_chat.created_at}
        elif ending_before:
            cursor_chat = await self.get_chat(ending_before)
            if not cursor_chat:
                raise NotFoundError("database", f"Chat with id {ending_before} not found")
            query["created_at"] = {"$lt": cursor_chat.created_at}

        cursor = self.db.chats.find(query)
        cursor.sort("created_at", DESCENDING).limit(limit + 1)

        chats = []
        async for doc in cursor:
            chats.append(self._to_chat(doc))

        has_more = len(chats) > limit
        return chats[:limit], has_more

    def _to_chat(self, doc: dict) -> Chat:
        return Chat(
            id=doc["_id"],
            user_id=doc["user_id"],
            title=doc.get("title") or "New chat",
            visibility=doc.get("visibility", Visibility.PRIVATE.value),
            created_at=_as_utc(doc["created_at"]),
        )

    def _to_document(self, message: Message) -> dict:
        data = message.model_dump(mode="json", by_alias=True, exclude={"id", "chat_id", "created_at"})
        data.update({
            "_id": message.id,
            "chat_id": message.chat_id,
            "created_at": message.created_at,
        })
        return data

    def _to_message(self, doc: dict) -> Message:
        return Message(
            id=doc["_id"],
            chat_id=doc["chat_id"],
            role=doc["role"],
            parts=doc.get("parts", []),
            attachments=doc.get("attachments", []),
            created_at=_as_utc(doc["created_at"]),
        )
