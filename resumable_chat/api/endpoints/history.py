from fastapi import APIRouter, Depends, Query
from typing import Optional
from resumable_chat.api.deps import get_chat_service, get_current_requester
from resumable_chat.core.exceptions import BadRequestError
from resumable_chat.schemas.chat import ChatHistoryResponse
from resumable_chat.schemas.user import Identity
from resumable_chat.services.chat import ChatService

router = APIRouter(tags=["History"])

@router.get("",
    response_model=ChatHistoryResponse,
    description="List the current user's chats",
    responses={
        200: {"description": "Page of chats, newest first"},
        400: {"description": "Missing limit or conflicting cursors"},
        401: {"description": "Not authenticated"},
        404: {"description": "Cursor chat not found"}
    })
async def get_history(
    limit: Optional[int] = Query(None, ge=1, le=100),
    starting_after: Optional[str] = Query(None, alias="startingAfter"),
    ending_before: Optional[str] = Query(None, alias="endingBefore"),
    requester: Identity = Depends(get_current_requester),
    chat_service: ChatService = Depends(get_chat_service)
) -> ChatHistoryResponse:
    """
    Cursor-paginated chat history. Pass the id of the first chat of a page as
    startingAfter, or the id of the last one as endingBefore.
    """
    if limit is None:
        raise BadRequestError()
    if starting_after and ending_before:
        raise BadRequestError("api", "Only one of startingAfter or endingBefore can be provided.")

    chats, has_more = await chat_service.list_chats_by_user(
        requester.id, limit, starting_after=starting_after, ending_before=ending_before
    )
    return ChatHistoryResponse(chats=chats, has_more=has_more)
