from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from borz.client.api import ChatAPI
from borz.client.realtime import RealtimeClient

logger = logging.getLogger(__name__)

SEND_TIMEOUTS = {"text": 60.0, "image": 120.0, "document": 180.0}

DEFAULT_IMAGE_TEXT = "Analyze this image"
DEFAULT_DOCUMENT_TEXT = "Analyze this document"

_DOCUMENT_MIME_BY_EXT = {
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "txt": "text/plain",
    "md": "text/markdown",
}


class SendTimeout(Exception):
    pass


class SendFailed(Exception):
    pass


@dataclass
class ClientMessage:
    id: str
    text: str
    is_user: bool
    created_at: str
    metadata: Optional[dict] = None

    @property
    def is_pending(self) -> bool:
        return self.id.startswith("temp-")

    @classmethod
    def from_payload(cls, payload: dict) -> "ClientMessage":
        return cls(
            id=payload["id"],
            text=payload["content"],
            is_user=payload["role"] == "user",
            created_at=payload["createdAt"],
            metadata=payload.get("metadata"),
        )


@dataclass
class ClientChat:
    id: str
    title: str
    created_at: str
    updated_at: str
    messages: list[ClientMessage] = field(default_factory=list)
    message_count: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "ClientChat":
        return cls(
            id=payload["id"],
            title=payload["title"],
            created_at=payload["createdAt"],
            updated_at=payload["updatedAt"],
            messages=[ClientMessage.from_payload(m) for m in payload.get("messages") or []],
            message_count=payload.get("messageCount"),
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def document_mime_type(file_name: str) -> str:
    ext = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    return _DOCUMENT_MIME_BY_EXT.get(ext, "application/octet-stream")


# One send's subscription; `acked` resolves on message-saved and fails on error
class PendingResponse:
    def __init__(self, request_id: str, chat_id: str, temp_id: str):
        self.request_id = request_id
        self.chat_id = chat_id
        self.temp_id = temp_id
        self.acked: asyncio.Future = asyncio.get_running_loop().create_future()
        self.finished = asyncio.Event()
        self.error: Optional[str] = None
        self.full_response: Optional[str] = None

    def fail_ack(self, message: str) -> None:
        if not self.acked.done():
            self.acked.set_exception(SendFailed(message))
            # Retrieved here so an unawaited failure never logs "exception was never retrieved"
            self.acked.exception()

    async def wait(self, timeout: Optional[float] = None) -> Optional[str]:
        await asyncio.wait_for(self.finished.wait(), timeout)
        return self.full_response


# Client-side chat state, reconciled against the server's realtime events and REST reads
class ChatStore:
    def __init__(
        self,
        api: ChatAPI,
        realtime: RealtimeClient,
        *,
        send_timeouts: Optional[dict[str, float]] = None,
        on_change: Optional[Callable[["ChatStore"], None]] = None,
    ):
        self.api = api
        self.realtime = realtime
        self.send_timeouts = {**SEND_TIMEOUTS, **(send_timeouts or {})}
        self.on_change = on_change

        self.chats: list[ClientChat] = []
        self.current_chat_id: Optional[str] = None
        self.is_loading = False
        self.is_thinking = False
        self.is_streaming = False
        self.streaming_buffer = ""
        self.streaming_message = ""
        self.last_error: Optional[str] = None

        self._subscriptions: dict[str, PendingResponse] = {}
        self.realtime.add_listener(self.handle_event)

    @property
    def current_chat(self) -> Optional[ClientChat]:
        return self._find_chat(self.current_chat_id)

    def _find_chat(self, chat_id: Optional[str]) -> Optional[ClientChat]:
        for chat in self.chats:
            if chat.id == chat_id:
                return chat
        return None

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _replace_chat(self, updated: ClientChat) -> None:
        self.chats = [updated if c.id == updated.id else c for c in self.chats]

    def _append_streaming_chunk(self, chunk: str) -> None:
        self.streaming_buffer += chunk
        self.streaming_message = self.streaming_buffer

    def clear_streaming(self) -> None:
        self.is_streaming = False
        self.is_thinking = False
        self.streaming_buffer = ""
        self.streaming_message = ""

    # Chat operations

    async def refresh_chats(self) -> None:
        self.is_loading = True
        try:
            rows = await self._call(self.api.list_chats)
            self.chats = [ClientChat.from_payload(r) for r in rows]
        finally:
            self.is_loading = False
            self._changed()

    async def create_new_chat(self, title: Optional[str] = None) -> str:
        self.is_loading = True
        try:
            chat = ClientChat.from_payload(await self._call(self.api.create_chat, title))
            self.chats = [chat, *self.chats]
            self.current_chat_id = chat.id
            return chat.id
        finally:
            self.is_loading = False
            self._changed()

    # Loads the full history only when the local copy has none
    async def switch_chat(self, chat_id: str) -> None:
        self.is_loading = True
        self.current_chat_id = chat_id
        try:
            existing = self._find_chat(chat_id)
            if existing is None or not existing.messages:
                full = ClientChat.from_payload(await self._call(self.api.get_chat, chat_id))
                if existing is None:
                    self.chats = [full, *self.chats]
                else:
                    self._replace_chat(full)
        finally:
            self.is_loading = False
            self._changed()

    async def delete_chat(self, chat_id: str) -> None:
        await self._call(self.api.delete_chat, chat_id)
        self.chats = [c for c in self.chats if c.id != chat_id]
        if self.current_chat_id == chat_id:
            self.current_chat_id = self.chats[0].id if self.chats else None
        self._changed()

    # Optimistic append to the current chat
    def add_message(self, message: ClientMessage) -> None:
        chat = self.current_chat
        if chat is None:
            return
        self._replace_chat(replace(chat, messages=[*chat.messages, message], updated_at=_now_iso()))
        self._changed()

    def update_chat(self, chat_id: str, **updates: Any) -> None:
        chat = self._find_chat(chat_id)
        if chat is None:
            return
        self._replace_chat(replace(chat, **updates))
        self._changed()

    async def clear_current_chat(self) -> None:
        chat_id = self.current_chat_id
        if not chat_id:
            return
        await self._call(self.api.clear_messages, chat_id)
        self.update_chat(chat_id, messages=[], updated_at=_now_iso())

    # Sending

    async def send_message(self, content: str) -> PendingResponse:
        return await self._send("text", "send-message", content, content, {"content": content})

    async def send_message_with_image(self, content: str, image: bytes, mime_type: str = "image/jpeg") -> PendingResponse:
        payload = {
            "content": content,
            "imageBase64": base64.b64encode(image).decode("ascii"),
            "mimeType": mime_type,
        }
        meta = {"type": "image", "mimeType": mime_type}
        return await self._send("image", "send-message-with-image", content or DEFAULT_IMAGE_TEXT, content, payload, meta)

    async def send_message_with_document(
        self, content: str, document: bytes, file_name: str, mime_type: Optional[str] = None
    ) -> PendingResponse:
        mime_type = mime_type or document_mime_type(file_name)
        payload = {
            "content": content,
            "documentBase64": base64.b64encode(document).decode("ascii"),
            "mimeType": mime_type,
            "fileName": file_name,
        }
        meta = {"type": "document", "mimeType": mime_type, "fileName": file_name}
        return await self._send(
            "document", "send-message-with-document", content or DEFAULT_DOCUMENT_TEXT, content, payload, meta
        )

    async def _send(
        self,
        kind: str,
        event: str,
        display_text: str,
        content: str,
        payload: dict,
        metadata: Optional[dict] = None,
    ) -> PendingResponse:
        chat_id = self.current_chat_id or await self.create_new_chat()

        temp_id = f"temp-{uuid.uuid4().hex}"
        self.add_message(ClientMessage(id=temp_id, text=display_text, is_user=True, created_at=_now_iso(), metadata=metadata))
        self.is_thinking = True
        self.streaming_buffer = ""
        self.streaming_message = ""
        self.last_error = None

        pending = PendingResponse(uuid.uuid4().hex, chat_id, temp_id)
        self._subscriptions[pending.request_id] = pending
        try:
            await self.realtime.emit(event, {**payload, "chatId": chat_id, "requestId": pending.request_id})
            await asyncio.wait_for(asyncio.shield(pending.acked), self.send_timeouts[kind])
        except asyncio.TimeoutError:
            self._drop(pending)
            logger.warning("store.send.timeout: chat=%s kind=%s", chat_id, kind)
            raise SendTimeout(f"Message send timeout after {self.send_timeouts[kind]:.0f}s")
        except Exception as e:
            self._drop(pending)
            self.last_error = str(e)
            raise
        return pending

    # Removes the subscription; later events for its request id are ignored
    def _drop(self, pending: PendingResponse) -> None:
        self._subscriptions.pop(pending.request_id, None)
        self.clear_streaming()
        pending.finished.set()
        self._changed()

    # Realtime listener

    async def handle_event(self, event: str, data: dict) -> None:
        if event == "chat-title-updated":
            if self._find_chat(data.get("chatId")) is not None and data.get("title"):
                self.update_chat(data["chatId"], title=data["title"])
            return

        pending = self._subscriptions.get(data.get("requestId") or "")
        if pending is None:
            return

        if event == "ai-response-start":
            self.is_thinking = False
            self.is_streaming = True
            self.streaming_buffer = ""
            self.streaming_message = ""
        elif event == "ai-response-chunk":
            self._append_streaming_chunk(data.get("chunk") or "")
        elif event == "message-saved":
            self._confirm_user_message(pending, data)
            if not pending.acked.done():
                pending.acked.set_result(data.get("messageId"))
        elif event == "ai-response-complete":
            await self._complete(pending, data)
            return
        elif event in ("ai-response-error", "error"):
            message = data.get("error") or data.get("message") or "Failed to send message"
            pending.error = message
            self.last_error = message
            pending.fail_ack(message)
            logger.warning("store.response.error: chat=%s err=%s", pending.chat_id, message)
            self._drop(pending)
            return
        self._changed()

    def _confirm_user_message(self, pending: PendingResponse, data: dict) -> None:
        chat = self._find_chat(pending.chat_id)
        if chat is None:
            return
        messages = [
            replace(m, id=data.get("messageId") or m.id, created_at=data.get("createdAt") or m.created_at)
            if m.id == pending.temp_id
            else m
            for m in chat.messages
        ]
        self._replace_chat(replace(chat, messages=messages))

    # Show the full reply, then replace the local chat wholesale with the server's copy
    async def _complete(self, pending: PendingResponse, data: dict) -> None:
        full_response = data.get("fullResponse") or self.streaming_buffer
        pending.full_response = full_response
        self.streaming_buffer = full_response
        self.streaming_message = full_response
        self._changed()
        try:
            self._replace_chat(ClientChat.from_payload(await self._call(self.api.get_chat, pending.chat_id)))
        except Exception as e:
            logger.warning("store.refetch.error: chat=%s err=%s", pending.chat_id, e)
            chat = self._find_chat(pending.chat_id)
            if chat is not None:
                reply = ClientMessage(
                    id=data.get("messageId") or f"temp-{uuid.uuid4().hex}",
                    text=full_response,
                    is_user=False,
                    created_at=data.get("createdAt") or _now_iso(),
                )
                self._replace_chat(replace(chat, messages=[*chat.messages, reply]))
        self._drop(pending)
