import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from resumable_chat.core.exceptions import ChatNotFoundError, ForbiddenError, UnauthorizedError
from resumable_chat.schemas.chat import Message, MessageRole, TextPart, Visibility
from resumable_chat.schemas.user import Identity
from resumable_chat.services.generation import GenerationDriver, GenerationRequest
from resumable_chat.services.resume import ResumeCoordinator
from resumable_chat.services.stream_transport import DisabledStreamTransport

from tests.helpers import ScriptedModel, collect, parse_records

OWNER = Identity(id="u1", type="guest")
STRANGER = Identity(id="u2", type="regular")


def _message(message_id, role, created_at, text="hello", chat_id="c1"):
    return Message(id=message_id, chat_id=chat_id, role=role, parts=[TextPart(text=text)], created_at=created_at)


@pytest.fixture
async def chat(chat_service):
    return await chat_service.save_chat("c1", OWNER.id, "hi", Visibility.PRIVATE)


async def test_requires_authentication(coordinator, chat):
    with pytest.raises(UnauthorizedError):
        await coordinator.resume("c1", None)


async def test_unknown_chat_is_not_found(coordinator):
    with pytest.raises(ChatNotFoundError):
        await coordinator.resume("missing", OWNER)


async def test_private_chat_is_forbidden_to_others(coordinator, chat):
    with pytest.raises(ForbiddenError):
        await coordinator.resume("c1", STRANGER)


async def test_public_chat_is_open_to_other_users(coordinator, chat_service):
    await chat_service.save_chat("pub", OWNER.id, "hi", Visibility.PUBLIC)
    assert await coordinator.resume("pub", STRANGER) is None


async def test_chat_without_streams_has_nothing_to_resume(coordinator, chat):
    assert await coordinator.resume("c1", OWNER) is None


async def test_resume_attaches_to_in_flight_generation(chat_service, registry, transport, coordinator, chat):
    gate = asyncio.Event()
    driver = GenerationDriver(chat_service, registry, transport, ScriptedModel(gate=gate, hold_at=2))
    history = [_message("m1", MessageRole.USER, datetime.now(timezone.utc), "hi")]
    run = await driver.start(GenerationRequest(chat_id="c1", history=history))
    await asyncio.sleep(0.01)

    first = await coordinator.resume("c1", OWNER)
    second = await coordinator.resume("c1", OWNER)
    first_task = asyncio.create_task(collect(first))
    second_task = asyncio.create_task(collect(second))
    gate.set()

    direct = await collect(run.response_chunks())
    first_chunks = await asyncio.wait_for(first_task, timeout=1)
    second_chunks = await asyncio.wait_for(second_task, timeout=1)

    assert first_chunks == direct
    assert second_chunks == direct
    assert parse_records("".join(first_chunks))[-1][0] == "d"


async def test_falls_back_to_fresh_assistant_message(chat_service, registry, coordinator, chat):
    now = datetime.now(timezone.utc)
    await registry.create_stream_id("c1")
    await chat_service.append([
        _message("m1", MessageRole.USER, now - timedelta(seconds=10), "hi"),
        _message("a1", MessageRole.ASSISTANT, now - timedelta(seconds=5), "hello back"),
    ])

    chunks = await collect(await coordinator.resume("c1", OWNER, now=now))
    assert len(chunks) == 1
    tag, data = parse_records(chunks[0])[0]
    assert tag == "2"
    assert data[0]["type"] == "append-message"
    replayed = json.loads(data[0]["message"])
    assert replayed["id"] == "a1"
    assert replayed["chatId"] == "c1"
    assert replayed["role"] == "assistant"
    assert replayed["parts"] == [{"type": "text", "text": "hello back"}]


async def test_fallback_ignores_stale_assistant_message(chat_service, registry, coordinator, chat):
    now = datetime.now(timezone.utc)
    await registry.create_stream_id("c1")
    await chat_service.append([_message("a1", MessageRole.ASSISTANT, now - timedelta(seconds=16))])

    assert await coordinator.resume("c1", OWNER, now=now) is None


async def test_fallback_ignores_user_message(chat_service, registry, coordinator, chat):
    now = datetime.now(timezone.utc)
    await registry.create_stream_id("c1")
    await chat_service.append([_message("m1", MessageRole.USER, now)])

    assert await coordinator.resume("c1", OWNER, now=now) is None


async def test_fallback_with_no_messages(registry, coordinator, chat):
    await registry.create_stream_id("c1")
    assert await coordinator.resume("c1", OWNER) is None


async def test_fallback_is_used_when_transport_is_disabled(chat_service, registry, chat):
    driver = GenerationDriver(chat_service, registry, DisabledStreamTransport(), ScriptedModel())
    history = [_message("m1", MessageRole.USER, datetime.now(timezone.utc), "hi")]
    run = await driver.start(GenerationRequest(chat_id="c1", history=history))
    await collect(run.response_chunks())

    coordinator = ResumeCoordinator(chat_service, registry, DisabledStreamTransport())
    chunks = await collect(await coordinator.resume("c1", OWNER))
    tag, data = parse_records(chunks[0])[0]
    assert tag == "2"
    assert json.loads(data[0]["message"])["id"] == run.message_id


async def test_only_the_most_recent_stream_is_consulted(chat_service, registry, transport, coordinator, chat):
    producer = await transport.open(await registry.create_stream_id("c1"))
    await producer.emit("old\n")
    await producer.close()
    # Newer stream with nothing in the transport
    await registry.create_stream_id("c1")

    assert await coordinator.resume("c1", OWNER) is None
