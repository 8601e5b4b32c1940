from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import StreamingResponse
from pymongo.errors import DuplicateKeyError
from typing import List, Optional
from resumable_chat.api.deps import (
    get_chat_service, get_current_requester, get_generation_driver, get_resume_coordinator, resolve_requester,
)
from resumable_chat.core.entitlements import check_message_limit
from resumable_chat.core.exceptions import BadRequestError, ChatNotFoundError, ForbiddenError
from resumable_chat.schemas.chat import Chat, Message, MessageRole, PostChatRequest
from resumable_chat.schemas.user import Identity
from resumable_chat.services.chat import ChatService, ensure_can_access
from resumable_chat.services.generation import GenerationDriver, GenerationRequest
from resumable_chat.services.prompts import RequestHints
from resumable_chat.services.resume import ResumeCoordinator
import logging

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])

STREAM_HEADERS = {"x-vercel-ai-data-stream": "v1"}
STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"


@router.post("",
    description="Send a message and stream the assistant response",
    responses={
        200: {"description": "Streamed response in the data stream wire format"},
        400: {"description": "Invalid request body"},
        401: {"description": "Not authenticated"},
        403: {"description": "Chat belongs to another user"},
        429: {"description": "Daily message limit reached"}
    })
async def post_chat(
    request: Request,
    body: PostChatRequest,
    requester: Identity = Depends(get_current_requester),
    chat_service: ChatService = Depends(get_chat_service),
    driver: GenerationDriver = Depends(get_generation_driver)
):
    """
    Append the user's message to the chat (creating the chat on first use)
    and stream the assistant's answer.

    The generation runs independently of this request: if the client
    disconnects it keeps going, and GET /api/chat?chatId= picks it up again.
    """
    messages_last_day = await chat_service.count_user_messages_since(requester.id, hours=24)
    check_message_limit(requester, messages_last_day)

    user_message = Message(
        id=body.message.id,
        chat_id=body.id,
        role=MessageRole.USER,
        parts=body.message.parts,
        attachments=body.message.experimental_attachments,
        created_at=datetime.now(timezone.utc),
    )

    chat = await chat_service.get_chat(body.id)
    if not chat:
        title = await driver.generate_title(user_message)
        chat = await chat_service.save_chat(body.id, requester.id, title, body.selected_visibility_type)
    else:
        ensure_can_access(chat, requester)

    previous_messages = await chat_service.list_by_chat(chat.id)
    try:
        await chat_service.append([user_message])
    except DuplicateKeyError:
        raise BadRequestError("chat", f"Message {user_message.id} already exists")

    settings = request.app.state.settings
    run = await driver.start(GenerationRequest(
        chat_id=chat.id,
        history=previous_messages + [user_message],
        model_id=body.selected_chat_model,
        request_hints=RequestHints.from_headers(request.headers),
        tools_enabled=settings.USE_TOOLS,
        streaming=settings.ENABLE_STREAMING,
    ))

    return StreamingResponse(run.response_chunks(), media_type=STREAM_MEDIA_TYPE, headers=STREAM_HEADERS)


@router.get("",
    description="Resume the most recent response stream of a chat",
    responses={
        200: {"description": "Buffered and live chunks, or a replayed message"},
        204: {"description": "Nothing to resume"},
        400: {"description": "Missing chatId"},
        401: {"description": "Not authenticated"},
        403: {"description": "Chat belongs to another user"},
        404: {"description": "Chat not found"}
    })
async def resume_chat(
    chat_id: Optional[str] = Query(None, alias="chatId"),
    requester: Optional[Identity] = Depends(resolve_requester),
    coordinator: ResumeCoordinator = Depends(get_resume_coordinator)
):
    """
    Reattach to the chat's latest generation. While it is still running (or
    finished within the retention window) the response replays every chunk
    emitted so far and then follows the live output.
    """
    if not chat_id:
        raise BadRequestError()

    stream = await coordinator.resume(chat_id, requester)
    if stream is None:
        return Response(status_code=204)
    return StreamingResponse(stream, media_type=STREAM_MEDIA_TYPE, headers=STREAM_HEADERS)


@router.delete("",
    response_model=Chat,
    description="Delete a chat",
    responses={
        200: {"description": "Chat deleted"},
        400: {"description": "Missing id"},
        401: {"description": "Not authenticated"},
        403: {"description": "Chat belongs to another user"},
        404: {"description": "Chat not found"}
    })
async def delete_chat(
    chat_id: Optional[str] = Query(None, alias="id"),
    requester: Identity = Depends(get_current_requester),
    chat_service: ChatService = Depends(get_chat_service)
):
    """
    Delete a chat and all its messages and stream records. Owner only.
    """
    if not chat_id:
        raise BadRequestError("chat")

    chat = await chat_service.get_chat(chat_id)
    if not chat:
        raise ChatNotFoundError()
    if not requester.owns(chat):
        raise ForbiddenError("chat")

    deleted = await chat_service.delete_chat(chat_id)
    if not deleted:
        raise ChatNotFoundError()
    return deleted


@router.get("/{chat_id}/messages",
    description="List the messages of a chat",
    responses={
        200: {"description": "Messages, oldest first"},
        401: {"description": "Not authenticated"},
        403: {"description": "Chat belongs to another user"},
        404: {"description": "Chat not found"}
    })
async def list_messages(
    chat_id: str,
    requester: Identity = Depends(get_current_requester),
    chat_service: ChatService = Depends(get_chat_service)
) -> List[dict]:
    chat = await chat_service.get_chat(chat_id)
    if not chat:
        raise ChatNotFoundError()
    ensure_can_access(chat, requester)

    messages = await chat_service.list_by_chat(chat_id)
    return [m.model_dump(mode="json", by_alias=True) for m in messages]
