from typing import Optional

from pydantic import Field, field_validator

from borz.schemas.common import CamelModel, reject_blank


class SendMessagePayload(CamelModel):
    chat_id: str = Field(min_length=1)
    content: str = Field(min_length=1, max_length=10000)
    request_id: Optional[str] = None

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        return reject_blank(value)


class SendImagePayload(CamelModel):
    chat_id: str = Field(min_length=1)
    content: str = Field(default="", max_length=10000)
    image_base64: str = Field(min_length=1)
    mime_type: str = Field(min_length=1)
    request_id: Optional[str] = None


class SendDocumentPayload(CamelModel):
    chat_id: str = Field(min_length=1)
    content: str = Field(default="", max_length=10000)
    document_base64: str = Field(min_length=1)
    mime_type: str = Field(min_length=1)
    file_name: str = Field(min_length=1, max_length=255)
    request_id: Optional[str] = None


class TypingPayload(CamelModel):
    chat_id: str = Field(min_length=1)
    is_typing: bool = False
