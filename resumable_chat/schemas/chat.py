from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, List, Literal, Optional, Union
from datetime import datetime, timezone
from enum import Enum

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"

class Visibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Message parts

class TextPart(CamelModel):
    type: Literal["text"] = "text"
    text: str

class ReasoningPart(CamelModel):
    type: Literal["reasoning"] = "reasoning"
    reasoning: str

class ToolCallPart(CamelModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: dict = Field(default_factory=dict)

class ToolResultPart(CamelModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    result: Any = None

class AttachmentPart(CamelModel):
    type: Literal["attachment"] = "attachment"
    url: str
    name: Optional[str] = None
    content_type: Optional[str] = None

MessagePart = Annotated[
    Union[TextPart, ReasoningPart, ToolCallPart, ToolResultPart, AttachmentPart],
    Field(discriminator="type"),
]


class Attachment(CamelModel):
    url: str
    name: Optional[str] = None
    content_type: Optional[str] = None


class Message(CamelModel):
    id: str
    chat_id: str
    role: MessageRole
    parts: List[MessagePart] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def text(self) -> str:
        """Concatenated text of all text parts"""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))


class Chat(CamelModel):
    id: str
    user_id: str
    title: str
    visibility: Visibility = Visibility.PRIVATE
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# Request/response bodies

class ClientMessage(CamelModel):
    id: str = Field(..., min_length=1)
    role: Literal["user"] = "user"
    content: Optional[str] = None
    parts: List[MessagePart] = Field(..., min_length=1)
    experimental_attachments: List[Attachment] = Field(default_factory=list, alias="experimental_attachments")
    created_at: Optional[datetime] = None

class PostChatRequest(CamelModel):
    id: str = Field(..., min_length=1, description="Chat ID, created on first message")
    message: ClientMessage
    selected_chat_model: Literal["chat-model", "chat-model-reasoning"] = "chat-model"
    selected_visibility_type: Visibility = Visibility.PRIVATE

class ChatHistoryResponse(CamelModel):
    chats: List[Chat]
    has_more: bool
