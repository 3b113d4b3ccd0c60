from typing import Any, List, Literal, Optional

from pydantic import Field, field_validator

from borz.schemas.common import CamelModel, UTCDateTime, reject_blank


class ChatCreateRequest(CamelModel):
    title: Optional[str] = Field(default=None, max_length=255)


class ChatUpdateRequest(CamelModel):
    title: str = Field(min_length=1, max_length=255)


# Body of the legacy (non-realtime) send endpoint
class SendMessageRequest(CamelModel):
    content: str = Field(min_length=1, max_length=10000)

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        return reject_blank(value)


class MessageOut(CamelModel):
    id: str
    chat_id: str
    content: str
    role: Literal["user", "assistant"]
    created_at: UTCDateTime
    metadata: Optional[dict[str, Any]] = None


# Chat session summary row used by the chat list
class ChatSummaryOut(CamelModel):
    id: str
    title: str
    created_at: UTCDateTime
    updated_at: UTCDateTime
    message_count: int = 0


class ChatOut(CamelModel):
    id: str
    user_id: str
    title: str
    created_at: UTCDateTime
    updated_at: UTCDateTime
    messages: List[MessageOut] = []


class ChatListOut(CamelModel):
    chats: List[ChatSummaryOut]


class ChatEnvelope(CamelModel):
    chat: ChatOut


class SuccessOut(CamelModel):
    success: bool = True
