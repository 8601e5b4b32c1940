from typing import Optional
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from resumable_chat.core.exceptions import UnauthorizedError
from resumable_chat.core.security import decode_access_token
from resumable_chat.schemas.user import Identity
from resumable_chat.services.auth import AuthService
from resumable_chat.services.chat import ChatService
from resumable_chat.services.generation import GenerationDriver
from resumable_chat.services.resume import ResumeCoordinator
import logging

logger = logging.getLogger(__name__)

GUEST_COOKIE = "guest_user_id"
SESSION_COOKIE = "session_token"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)

# Everything below is created once at startup and kept on app.state

def get_auth_service(request: Request) -> AuthService:
    return AuthService(request.app.state.mongodb)

def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service

def get_generation_driver(request: Request) -> GenerationDriver:
    return request.app.state.generation_driver

def get_resume_coordinator(request: Request) -> ResumeCoordinator:
    return request.app.state.resume_coordinator


async def resolve_requester(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> Optional[Identity]:
    """
    Resolve who is making the request, or None if nobody is signed in.

    A session token (Authorization header, or session cookie) is tried
    first, then the guest cookie, which only ever resolves to guest users.
    """
    token = token or request.cookies.get(SESSION_COOKIE)
    if token:
        user_id = decode_access_token(token)
        user = await auth_service.get_user_by_id(user_id) if user_id else None
        if user:
            return Identity(id=user.id, type=user.type, email=user.email)
        logger.debug("Ignoring invalid session token")

    guest_id = request.cookies.get(GUEST_COOKIE)
    if guest_id:
        user = await auth_service.get_user_by_id(guest_id)
        if user and user.type == "guest":
            return Identity(id=user.id, type=user.type, email=user.email)

    return None


async def get_current_requester(
    requester: Optional[Identity] = Depends(resolve_requester),
) -> Identity:
    if requester is None:
        raise UnauthorizedError()
    return requester
