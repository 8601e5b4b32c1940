"""
Resumable stream transport.

A producer writes the chunks of one generation to a channel keyed by stream id.
Any number of subscribers can attach to the channel, immediately or later, and
receive every buffered chunk in emission order followed by live chunks until the
producer closes the channel. Closed channels stay subscribable for a retention
window so that a client reloading the page can still pick up the response.

Three backends are provided:

- InMemoryStreamTransport: single-process, used by default and in tests
- RedisStreamTransport: Redis Streams, shared by every worker using the same Redis
- DisabledStreamTransport: no resumability; subscribe always reports NotFound
"""
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, List, Optional
import asyncio
import logging
import time

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from resumable_chat.core.exceptions import StreamAlreadyOpenError, StreamClosedError

logger = logging.getLogger(__name__)


class StreamProducer(ABC):
    def __init__(self, stream_id: str):
        self.stream_id = stream_id

    @abstractmethod
    async def emit(self, chunk: str) -> None:
        """Append a chunk and wake every subscriber"""

    @abstractmethod
    async def close(self) -> None:
        """Mark end of stream. Calling it again is a no-op."""


class StreamTransport(ABC):
    @abstractmethod
    async def open(self, stream_id: str) -> StreamProducer:
        """Create a channel. Raises StreamAlreadyOpenError if a live one exists."""

    @abstractmethod
    async def subscribe(self, stream_id: str) -> Optional[AsyncIterator[str]]:
        """Replay + follow a channel, or None if no channel exists for the id"""

    async def close(self) -> None:
        pass


# In-memory backend

class _Channel:
    def __init__(self, stream_id: str, opened_at: float):
        self.stream_id = stream_id
        self.opened_at = opened_at
        self.closed_at: Optional[float] = None
        self.chunks: List[str] = []
        self.condition = asyncio.Condition()

    @property
    def closed(self) -> bool:
        return self.closed_at is not None


class _InMemoryProducer(StreamProducer):
    def __init__(self, transport: "InMemoryStreamTransport", channel: _Channel):
        super().__init__(channel.stream_id)
        self._transport = transport
        self._channel = channel

    async def emit(self, chunk: str) -> None:
        async with self._channel.condition:
            if self._channel.closed:
                raise StreamClosedError(self.stream_id)
            self._channel.chunks.append(chunk)
            self._channel.condition.notify_all()

    async def close(self) -> None:
        await self._transport._close_channel(self._channel)


class InMemoryStreamTransport(StreamTransport):
    def __init__(
        self,
        retention_seconds: float = 60.0,
        max_lifetime_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self.max_lifetime_seconds = max_lifetime_seconds
        self._clock = clock
        self._channels: Dict[str, _Channel] = {}

    async def open(self, stream_id: str) -> StreamProducer:
        await self._prune()
        existing = self._channels.get(stream_id)
        if existing is not None and not existing.closed:
            raise StreamAlreadyOpenError(stream_id)

        channel = _Channel(stream_id, self._clock())
        self._channels[stream_id] = channel
        return _InMemoryProducer(self, channel)

    async def subscribe(self, stream_id: str) -> Optional[AsyncIterator[str]]:
        await self._prune()
        channel = self._channels.get(stream_id)
        if channel is None:
            return None
        return self._follow(channel)

    async def close(self) -> None:
        for channel in list(self._channels.values()):
            await self._close_channel(channel)
        self._channels.clear()

    async def _follow(self, channel: _Channel) -> AsyncIterator[str]:
        cursor = 0
        while True:
            async with channel.condition:
                await channel.condition.wait_for(
                    lambda: cursor < len(channel.chunks) or channel.closed
                )
                pending = channel.chunks[cursor:]
                cursor += len(pending)
                finished = channel.closed

            for chunk in pending:
                yield chunk
            if finished:
                return

    async def _close_channel(self, channel: _Channel) -> None:
        async with channel.condition:
            if channel.closed:
                return
            channel.closed_at = self._clock()
            channel.condition.notify_all()

    def _is_expired(self, channel: _Channel, now: float) -> bool:
        if channel.closed:
            return now - channel.closed_at > self.retention_seconds
        return now - channel.opened_at > self.max_lifetime_seconds

    async def _prune(self) -> None:
        now = self._clock()
        expired = [c for c in self._channels.values() if self._is_expired(c, now)]
        for channel in expired:
            if not channel.closed:
                logger.warning(f"Stream {channel.stream_id} exceeded its lifetime without closing")
                await self._close_channel(channel)
            self._channels.pop(channel.stream_id, None)


# Redis backend

class _RedisProducer(StreamProducer):
    def __init__(self, transport: "RedisStreamTransport", stream_id: str):
        super().__init__(stream_id)
        self._transport = transport
        self._lock = asyncio.Lock()
        self._closed = False
        self._failed = False

    async def emit(self, chunk: str) -> None:
        async with self._lock:
            if self._closed:
                raise StreamClosedError(self.stream_id)
            if self._failed:
                return
            try:
                await self._transport.client.xadd(
                    self._transport.chunks_key(self.stream_id),
                    {"type": "chunk", "data": chunk},
                )
            except RedisError as e:
                # Resumability for this stream is lost, the generation itself continues
                logger.error(f"Redis emit failed for stream {self.stream_id}: {e}")
                self._failed = True

    async def close(self) -> None:
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            client = self._transport.client
            chunks_key = self._transport.chunks_key(self.stream_id)
            try:
                await client.xadd(chunks_key, {"type": "end"})
                await client.expire(chunks_key, int(self._transport.retention_seconds))
                await client.delete(self._transport.live_key(self.stream_id))
            except RedisError as e:
                logger.error(f"Redis close failed for stream {self.stream_id}: {e}")


class RedisStreamTransport(StreamTransport):
    KEY_PREFIX = "resumable-chat:stream"
    BLOCK_MS = 1000
    READ_COUNT = 100

    def __init__(
        self,
        client: aioredis.Redis,
        retention_seconds: float = 60.0,
        max_lifetime_seconds: float = 300.0,
    ):
        self.client = client
        self.retention_seconds = retention_seconds
        self.max_lifetime_seconds = max_lifetime_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStreamTransport":
        return cls(aioredis.Redis.from_url(url, decode_responses=True), **kwargs)

    def chunks_key(self, stream_id: str) -> str:
        return f"{self.KEY_PREFIX}:{stream_id}:chunks"

    def live_key(self, stream_id: str) -> str:
        return f"{self.KEY_PREFIX}:{stream_id}:live"

    async def open(self, stream_id: str) -> StreamProducer:
        lifetime = int(self.max_lifetime_seconds)
        try:
            acquired = await self.client.set(self.live_key(stream_id), "1", nx=True, ex=lifetime)
        except RedisError as e:
            logger.error(f"Redis open failed for stream {stream_id}: {e}")
            return _NullProducer(stream_id)
        if not acquired:
            raise StreamAlreadyOpenError(stream_id)

        chunks_key = self.chunks_key(stream_id)
        try:
            await self.client.delete(chunks_key)
            # Marker entry so the channel is visible to subscribers before the first chunk
            await self.client.xadd(chunks_key, {"type": "open"})
            await self.client.expire(chunks_key, lifetime)
        except RedisError as e:
            logger.error(f"Redis open failed for stream {stream_id}: {e}")
            return _NullProducer(stream_id)
        return _RedisProducer(self, stream_id)

    async def subscribe(self, stream_id: str) -> Optional[AsyncIterator[str]]:
        chunks_key = self.chunks_key(stream_id)
        try:
            if not await self.client.exists(chunks_key):
                return None
        except RedisError as e:
            logger.warning(f"Redis unavailable while resuming stream {stream_id}: {e}")
            return None
        return self._follow(chunks_key)

    async def close(self) -> None:
        await self.client.aclose()

    async def _follow(self, chunks_key: str) -> AsyncIterator[str]:
        last_id = "0-0"
        while True:
            try:
                response = await self.client.xread(
                    {chunks_key: last_id}, count=self.READ_COUNT, block=self.BLOCK_MS
                )
                if not response and not await self.client.exists(chunks_key):
                    # Expired before the producer closed it
                    return
            except RedisError as e:
                logger.warning(f"Redis read failed on {chunks_key}: {e}")
                return

            for _key, entries in response or []:
                for entry_id, fields in entries:
                    last_id = entry_id
                    entry_type = fields.get("type")
                    if entry_type == "end":
                        return
                    if entry_type == "chunk":
                        yield fields["data"]


# Disabled backend

class _NullProducer(StreamProducer):
    async def emit(self, chunk: str) -> None:
        pass

    async def close(self) -> None:
        pass


class DisabledStreamTransport(StreamTransport):
    async def open(self, stream_id: str) -> StreamProducer:
        return _NullProducer(stream_id)

    async def subscribe(self, stream_id: str) -> Optional[AsyncIterator[str]]:
        return None


def build_stream_transport(settings) -> StreamTransport:
    """Pick the transport backend from settings"""
    if not settings.RESUMABLE_STREAMS_ENABLED:
        if settings.STREAM_TRANSPORT == "redis":
            logger.warning(" > Resumable streams are disabled due to missing REDIS_URL")
        else:
            logger.info(" > Resumable streams are disabled")
        return DisabledStreamTransport()

    if settings.STREAM_TRANSPORT == "redis":
        logger.info("Using Redis stream transport")
        return RedisStreamTransport.from_url(
            settings.REDIS_URL,
            retention_seconds=settings.STREAM_RETENTION_SECONDS,
            max_lifetime_seconds=settings.STREAM_MAX_LIFETIME_SECONDS,
        )

    if settings.STREAM_TRANSPORT != "memory":
        logger.warning(f"Unknown STREAM_TRANSPORT {settings.STREAM_TRANSPORT!r}, falling back to memory")
    logger.info("Using in-memory stream transport")
    return InMemoryStreamTransport(
        retention_seconds=settings.STREAM_RETENTION_SECONDS,
        max_lifetime_seconds=settings.STREAM_MAX_LIFETIME_SECONDS,
    )
