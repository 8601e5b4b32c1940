"""
Reconnecting clients to an in-flight or recently finished generation.

Resuming first tries the stream transport for the chat's most recent stream.
If the transport has nothing for it (expired, never existed, or transport
disabled), the most recent persisted message is replayed instead, provided it
is a fresh assistant message. Resumability is therefore best-effort on top of
persistence: correctness never depends on the transport.
"""
from datetime import datetime, timezone
from typing import AsyncIterator, Optional
import logging

from resumable_chat.core.exceptions import ChatNotFoundError, UnauthorizedError
from resumable_chat.schemas.chat import Message, MessageRole
from resumable_chat.schemas.user import Identity
from resumable_chat.services import wire
from resumable_chat.services.chat import ChatService, ensure_can_access
from resumable_chat.services.stream_registry import StreamRegistry
from resumable_chat.services.stream_transport import StreamTransport

logger = logging.getLogger(__name__)


async def _single(chunk: str) -> AsyncIterator[str]:
    yield chunk


class ResumeCoordinator:
    def __init__(
        self,
        chat_service: ChatService,
        registry: StreamRegistry,
        transport: StreamTransport,
        freshness_seconds: float = 15.0,
    ):
        self.chat_service = chat_service
        self.registry = registry
        self.transport = transport
        self.freshness_seconds = freshness_seconds

    async def resume(
        self,
        chat_id: str,
        requester: Optional[Identity],
        now: Optional[datetime] = None,
    ) -> Optional[AsyncIterator[str]]:
        """
        Returns the chunk sequence to replay, or None when there is nothing
        to resume (the HTTP layer answers 204).

        Raises UnauthorizedError, ChatNotFoundError or ForbiddenError.
        """
        resume_requested_at = now or datetime.now(timezone.utc)

        if requester is None:
            raise UnauthorizedError()

        chat = await self.chat_service.get_chat(chat_id)
        if not chat:
            raise ChatNotFoundError()
        ensure_can_access(chat, requester)

        stream_ids = await self.registry.list_stream_ids(chat_id)
        if not stream_ids:
            logger.info(f"Resume for chat {chat_id}: no streams")
            return None

        recent_stream_id = stream_ids[-1]
        stream = await self.transport.subscribe(recent_stream_id)
        if stream is not None:
            logger.info(f"Resume for chat {chat_id}: live stream {recent_stream_id}")
            return stream

        messages = await self.chat_service.list_by_chat(chat_id)
        replay = self._replayable(messages[-1] if messages else None, resume_requested_at)
        if replay is None:
            logger.info(f"Resume for chat {chat_id}: nothing to replay")
            return None

        logger.info(f"Resume for chat {chat_id}: replaying message {replay.id}")
        return _single(wire.append_message(replay.model_dump_json(by_alias=True)))

    def _replayable(self, message: Optional[Message], now: datetime) -> Optional[Message]:
        if message is None or message.role != MessageRole.ASSISTANT:
            return None
        if (now - message.created_at).total_seconds() > self.freshness_seconds:
            return None
        return message
