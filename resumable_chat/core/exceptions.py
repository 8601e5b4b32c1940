from typing import Any, Optional
from fastapi import HTTPException, status


# Default human-readable messages per error type
ERROR_MESSAGES = {
    "bad_request": "The request couldn't be processed. Please check your input and try again.",
    "unauthorized": "You need to sign in before continuing.",
    "forbidden": "Your account does not have access to this resource.",
    "not_found": "The requested resource was not found.",
    "rate_limit": "You have exceeded your maximum number of messages for the day. Please try again later.",
    "upstream": "The language model failed to produce a response. Please try again later.",
}


class ChatError(HTTPException):
    """
    Base error for the chat API.

    `code` has the form "<type>:<surface>" (e.g. "forbidden:chat") and is the
    stable identifier clients switch on; `detail` is the human message.
    """

    error_type = "bad_request"
    status_code_for_type = status.HTTP_400_BAD_REQUEST

    def __init__(self, surface: str = "api", message: Optional[str] = None, cause: Any = None):
        self.surface = surface
        self.code = f"{self.error_type}:{surface}"
        self.cause = cause
        super().__init__(
            status_code=self.status_code_for_type,
            detail=message or ERROR_MESSAGES[self.error_type],
        )

    def to_payload(self) -> dict:
        payload = {"code": self.code, "message": self.detail}
        if self.cause is not None:
            payload["cause"] = self.cause
        return payload


class BadRequestError(ChatError):
    error_type = "bad_request"
    status_code_for_type = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(ChatError):
    error_type = "unauthorized"
    status_code_for_type = status.HTTP_401_UNAUTHORIZED

    def __init__(self, surface: str = "api", message: Optional[str] = None, cause: Any = None):
        super().__init__(surface, message, cause)
        self.headers = {"WWW-Authenticate": "Bearer"}


class ForbiddenError(ChatError):
    error_type = "forbidden"
    status_code_for_type = status.HTTP_403_FORBIDDEN


class NotFoundError(ChatError):
    error_type = "not_found"
    status_code_for_type = status.HTTP_404_NOT_FOUND


class ChatNotFoundError(NotFoundError):
    def __init__(self, message: Optional[str] = None):
        super().__init__("chat", message or "The requested chat was not found.")


class RateLimitedError(ChatError):
    error_type = "rate_limit"
    status_code_for_type = status.HTTP_429_TOO_MANY_REQUESTS


class UpstreamError(ChatError):
    error_type = "upstream"
    status_code_for_type = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: Optional[str] = None, cause: Any = None):
        super().__init__("chat", message, cause)


class InvalidCredentialsError(UnauthorizedError):
    def __init__(self):
        super().__init__("auth", "Incorrect email or password")


class UserExistsError(BadRequestError):
    def __init__(self):
        super().__init__("auth", "User with this email already exists")


class WeakPasswordError(BadRequestError):
    def __init__(self):
        super().__init__(
            "auth",
            "Password must be at least 8 characters long and contain at least one number and one letter"
        )


# Stream transport errors. These never reach HTTP clients.

class StreamTransportError(Exception):
    pass


class StreamAlreadyOpenError(StreamTransportError):
    def __init__(self, stream_id: str):
        super().__init__(f"A live producer already exists for stream {stream_id}")
        self.stream_id = stream_id


class StreamClosedError(StreamTransportError):
    def __init__(self, stream_id: str):
        super().__init__(f"Stream {stream_id} is already closed")
        self.stream_id = stream_id
