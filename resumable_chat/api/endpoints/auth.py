from fastapi import APIRouter, Depends, Request, Response
from fastapi.security import OAuth2PasswordRequestForm
from resumable_chat.api.deps import GUEST_COOKIE, get_auth_service
from resumable_chat.core.security import create_access_token
from resumable_chat.models.user import UserInDB
from resumable_chat.schemas.user import TokenResponse, UserCreate, UserResponse
from resumable_chat.services.auth import AuthService

router = APIRouter(tags=["Authentication"])


def _token_response(user: UserInDB) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user.id, user.type),
        user=UserResponse(id=user.id, email=user.email, type=user.type, created_at=user.created_at),
    )


@router.post("/guest",
    response_model=TokenResponse,
    description="Start a guest session",
    responses={
        200: {"description": "Guest user created; guest cookie set"}
    })
async def guest_sign_in(
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service)
) -> TokenResponse:
    """
    Create a guest user and set the guest cookie used by the chat endpoints
    when no bearer token is present.
    """
    user = await auth_service.create_guest_user()
    max_age = request.app.state.settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
    response.set_cookie(GUEST_COOKIE, user.id, httponly=True, samesite="lax", max_age=max_age)
    return _token_response(user)


@router.post("/register", response_model=UserResponse,
    description="Register a new user account",
    responses={
        200: {"description": "User created successfully"},
        400: {"description": "Invalid input or email already registered"}
    })
async def register(
    user_data: UserCreate,
    auth_service: AuthService = Depends(get_auth_service)
) -> UserResponse:
    """
    Register a new user with:
    - email: Valid email address
    - password: Minimum 8 characters, at least one letter and one number
    """
    user = await auth_service.create_user(user_data)
    return UserResponse(id=user.id, email=user.email, type=user.type, created_at=user.created_at)


@router.post("/login",
    response_model=TokenResponse,
    description="Authenticate user and return access token",
    responses={
        200: {"description": "Successfully authenticated"},
        401: {"description": "Incorrect email or password"}
    })
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    auth_service: AuthService = Depends(get_auth_service)
) -> TokenResponse:
    """
    Login with user credentials:
    - username: User's email address
    - password: User's password
    """
    user = await auth_service.authenticate_user(form_data.username, form_data.password)
    return _token_response(user)
