from __future__ import annotations

import asyncio
import base64
import binascii
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, NamedTuple, Optional

import pydantic
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from borz.crud import chat as chat_crud
from borz.crud.user import as_utc
from borz.errors import ChatAppError, PersistenceError, UpstreamGenerationError
from borz.rate_limiters.message_rate_limiter import MessageRateLimiter
from borz.schemas.ws import SendDocumentPayload, SendImagePayload, SendMessagePayload, TypingPayload
from borz.services.chat_service import derive_title, should_auto_title
from borz.services.connection_manager import ClientConnection, ConnectionManager, chat_room
from borz.services.documents import is_supported_document
from borz.services.model_gateway import (
    DEFAULT_DOCUMENT_PROMPT,
    DEFAULT_IMAGE_PROMPT,
    ModelGateway,
    trim_history_for_provider,
)

logger = logging.getLogger(__name__)

TEXT = "text"
IMAGE = "image"
DOCUMENT = "document"

IN_PROGRESS_MESSAGE = "A response is already in progress for this chat"
GENERATION_FAILED_MESSAGE = "Failed to generate AI response"
LEGACY_ERROR_SUFFIX = "\n[Error: Failed to generate response]"


class OwnedChat(NamedTuple):
    id: str
    title: str


class SavedMessage(NamedTuple):
    id: str
    chat_id: str
    role: str
    content: str
    created_at: str


# One send, whichever event carried it
@dataclass
class SendRequest:
    kind: str
    chat_id: str
    content: str
    request_id: str
    attachment: Optional[bytes] = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None

    # What gets persisted as the user message: a marker for attachments, then the typed text
    @property
    def stored_content(self) -> str:
        if self.kind == IMAGE:
            return f"[Image] {self.content}"
        if self.kind == DOCUMENT:
            return f"[Document: {self.file_name}] {self.content}"
        return self.content

    @property
    def metadata(self) -> Optional[dict[str, Any]]:
        if self.kind == IMAGE:
            return {"type": "image", "mimeType": self.mime_type}
        if self.kind == DOCUMENT:
            return {"type": "document", "mimeType": self.mime_type, "fileName": self.file_name}
        return None

    @property
    def prompt(self) -> str:
        if self.content.strip():
            return self.content
        return DEFAULT_IMAGE_PROMPT if self.kind == IMAGE else DEFAULT_DOCUMENT_PROMPT

    # Auto-titles come from the typed text, falling back to the attachment marker
    @property
    def title_source(self) -> str:
        return self.content if self.content.strip() else self.stored_content


# Runs fn(session, *args) on a worker thread with its own session; commits on success
async def run_in_session(session_factory: sessionmaker, fn: Callable[..., Any], *args: Any) -> Any:
    def _run():
        session: Session = session_factory()
        try:
            result = fn(session, *args)
            session.commit()
            return result
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _run)


def _load_owned_chat(session: Session, chat_id: str, user_id: str) -> Optional[OwnedChat]:
    chat = chat_crud.get_owned_chat(session, chat_id, user_id)
    if chat is None:
        return None
    return OwnedChat(id=chat.id, title=chat.title)


def _load_recent_history(session: Session, chat_id: str, limit: int) -> list[dict]:
    return [{"role": m.role, "content": m.content} for m in chat_crud.get_recent_messages(session, chat_id, limit)]


# Every new message bumps the chat's updated_at in the same transaction
def _insert_message(session: Session, chat_id: str, role: str, content: str, meta: Optional[dict]) -> SavedMessage:
    msg = chat_crud.create_chat_message(session, chat_id, role, content, meta)
    chat_crud.touch_chat(session, chat_id)
    return SavedMessage(
        id=msg.id,
        chat_id=msg.chat_id,
        role=msg.role,
        content=msg.content,
        created_at=as_utc(msg.created_at).isoformat(),
    )


def _apply_auto_title(session: Session, chat_id: str, title: str) -> bool:
    return chat_crud.set_title_if_sentinel(session, chat_id, title)


# Re-chunks a finished single-shot reply so the client renders it as a stream
async def replay_chunks(text: str, chunk_size: int, delay_seconds: float) -> AsyncIterator[str]:
    size = max(1, chunk_size)
    for start in range(0, len(text), size):
        yield text[start:start + size]
        if delay_seconds > 0:
            await asyncio.sleep(delay_seconds)


def _decode_base64(value: str, what: str) -> bytes:
    if "," in value and value.lstrip().startswith("data:"):
        value = value.split(",", 1)[1]
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError(f"Invalid {what} data")


def _validation_details(e: pydantic.ValidationError) -> list[dict]:
    return [{"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")} for err in e.errors()]


# Drives every send over the realtime channel: validate, start, stream, persist, complete.
# Each send runs in a detached task so a dropped socket never cancels generation or persistence;
# emits to a closed connection are silently dropped.
class StreamingCoordinator:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: ModelGateway,
        manager: ConnectionManager,
        *,
        history_limit: int = 10,
        replay_chunk_size: int = 24,
        replay_chunk_delay_ms: int = 15,
        rate_limiter: Optional[MessageRateLimiter] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.manager = manager
        self.history_limit = history_limit
        self.replay_chunk_size = replay_chunk_size
        self.replay_chunk_delay = max(0, replay_chunk_delay_ms) / 1000.0
        self.rate_limiter = rate_limiter
        self._seq = itertools.count(1)
        self._in_flight: set[tuple[str, str]] = set()
        self._tasks: set[asyncio.Task] = set()

    async def _db(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await run_in_session(self.session_factory, fn, *args)

    def _request_id(self, chat_id: str, supplied: Optional[str]) -> str:
        return supplied or f"{chat_id}:{next(self._seq)}"

    # Entry point for one inbound frame from an authenticated connection
    async def handle_event(self, conn: ClientConnection, event: str, data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        if event == "typing":
            await self.handle_typing(conn, data)
            return
        if event not in ("send-message", "send-message-with-image", "send-message-with-document"):
            conn.emit("error", {"message": f"Unknown event: {event}"})
            return

        try:
            request = self._parse_send(event, data)
        except pydantic.ValidationError as e:
            conn.emit("error", {"message": "Validation failed", "details": _validation_details(e), **_echo_ids(data)})
            return
        except ValueError as e:
            conn.emit("error", {"message": str(e), **_echo_ids(data)})
            return
        self.start_send(conn, request)

    def _parse_send(self, event: str, data: dict) -> SendRequest:
        if event == "send-message":
            p = SendMessagePayload.model_validate(data)
            return SendRequest(TEXT, p.chat_id, p.content, self._request_id(p.chat_id, p.request_id))
        if event == "send-message-with-image":
            p = SendImagePayload.model_validate(data)
            if not p.mime_type.lower().startswith("image/"):
                raise ValueError(f"Unsupported image type: {p.mime_type}")
            return SendRequest(
                IMAGE,
                p.chat_id,
                p.content,
                self._request_id(p.chat_id, p.request_id),
                attachment=_decode_base64(p.image_base64, "image"),
                mime_type=p.mime_type,
            )
        p = SendDocumentPayload.model_validate(data)
        if not is_supported_document(p.mime_type, p.file_name):
            raise ValueError(f"Unsupported document type: {p.mime_type}")
        return SendRequest(
            DOCUMENT,
            p.chat_id,
            p.content,
            self._request_id(p.chat_id, p.request_id),
            attachment=_decode_base64(p.document_base64, "document"),
            mime_type=p.mime_type,
            file_name=p.file_name,
        )

    # At most one in-flight send per (chat, connection); later ones are rejected, not queued
    def start_send(self, conn: ClientConnection, request: SendRequest) -> Optional[asyncio.Task]:
        key = (request.chat_id, conn.id)
        if key in self._in_flight:
            conn.emit("error", {"message": IN_PROGRESS_MESSAGE, "chatId": request.chat_id, "requestId": request.request_id})
            return None
        self._in_flight.add(key)

        task = asyncio.create_task(self._run_send(conn, request))
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._in_flight.discard(key)
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("chat.send.bg.error: chat=%s err=%r", request.chat_id, t.exception())

        task.add_done_callback(_done)
        return task

    async def _check_rate_limit(self, user_id: str):
        if self.rate_limiter is None:
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.rate_limiter.check, user_id)

    async def _run_send(self, conn: ClientConnection, req: SendRequest) -> None:
        ids = {"chatId": req.chat_id, "requestId": req.request_id}

        try:
            chat, history = await asyncio.gather(
                self._db(_load_owned_chat, req.chat_id, conn.user_id),
                self._db(_load_recent_history, req.chat_id, self.history_limit),
            )
        except SQLAlchemyError:
            logger.exception("chat.send.load.error: chat=%s", req.chat_id)
            conn.emit("error", {"message": "Failed to send message", **ids})
            return
        if chat is None:
            conn.emit("error", {"message": "Chat not found", **ids})
            return

        decision = await self._check_rate_limit(conn.user_id)
        if decision is not None and not decision.allowed:
            conn.emit("error", {"message": decision.message, **ids})
            return

        self.manager.join(conn, chat_room(req.chat_id))
        conn.emit("ai-response-start", ids)

        user_task = asyncio.create_task(self._save_user_message(conn, req))
        title_task: Optional[asyncio.Task] = None
        if should_auto_title(chat.title, len(history), req.title_source):
            title_task = asyncio.create_task(self._apply_title(conn, req, derive_title(req.title_source)))

        settled: set[asyncio.Task] = set()
        error_message: Optional[str] = None
        full_response = ""
        chunks = 0
        t0 = time.perf_counter()
        try:
            async for piece in self._generate(req, trim_history_for_provider(history)):
                full_response += piece
                chunks += 1
                conn.emit("ai-response-chunk", {**ids, "chunk": piece})

            if not full_response.strip():
                raise UpstreamGenerationError("The model returned an empty response")

            logger.info(
                "stream.done: chat=%s kind=%s chunks=%d chars=%d ms=%d",
                req.chat_id,
                req.kind,
                chunks,
                len(full_response),
                int((time.perf_counter() - t0) * 1000),
            )

            # The assistant message must land after the user message
            settled.add(user_task)
            await user_task
            if title_task is not None:
                settled.add(title_task)
                await _settle(title_task, "chat.title.bg.error", req.chat_id)
            try:
                assistant = await self._db(_insert_message, req.chat_id, "assistant", full_response, None)
            except SQLAlchemyError:
                raise PersistenceError("Failed to save message")

            conn.emit(
                "ai-response-complete",
                {**ids, "messageId": assistant.id, "fullResponse": full_response, "createdAt": assistant.created_at},
            )
        except ChatAppError as e:
            logger.warning("chat.stream.failed: chat=%s kind=%s err=%s", req.chat_id, req.kind, e.message)
            error_message = e.message
        except Exception:
            logger.exception("chat.stream.error: chat=%s kind=%s", req.chat_id, req.kind)
            error_message = GENERATION_FAILED_MESSAGE
        finally:
            if user_task not in settled:
                await _settle(user_task, "chat.user_message.bg.error", req.chat_id)
            if title_task is not None and title_task not in settled:
                await _settle(title_task, "chat.title.bg.error", req.chat_id)

        # Reported once the side writes have settled, so the client's refetch sees them
        if error_message is not None:
            conn.emit("ai-response-error", {**ids, "error": error_message})

    async def _generate(self, req: SendRequest, history: list[dict]) -> AsyncIterator[str]:
        if req.kind == TEXT:
            async for piece in self.gateway.generate_stream(req.content, history):
                yield piece
            return

        if req.kind == IMAGE:
            text = await self.gateway.generate_with_image(req.prompt, req.attachment, req.mime_type)
        else:
            text = await self.gateway.generate_with_document(req.prompt, req.attachment, req.mime_type, req.file_name)
        async for piece in replay_chunks(text, self.replay_chunk_size, self.replay_chunk_delay):
            yield piece

    async def _save_user_message(self, conn: ClientConnection, req: SendRequest) -> SavedMessage:
        try:
            saved = await self._db(_insert_message, req.chat_id, "user", req.stored_content, req.metadata)
        except SQLAlchemyError:
            raise PersistenceError("Failed to save message")
        conn.emit(
            "message-saved",
            {
                "messageId": saved.id,
                "chatId": saved.chat_id,
                "content": saved.content,
                "role": saved.role,
                "createdAt": saved.created_at,
                "requestId": req.request_id,
            },
        )
        return saved

    async def _apply_title(self, conn: ClientConnection, req: SendRequest, title: str) -> None:
        changed = await self._db(_apply_auto_title, req.chat_id, title)
        if changed:
            logger.info("chat.title.auto: chat=%s", req.chat_id)
            conn.emit("chat-title-updated", {"chatId": req.chat_id, "title": title, "requestId": req.request_id})

    # Typing is rebroadcast to the chat's other listeners; ownership is checked once per connection
    async def handle_typing(self, conn: ClientConnection, data: dict) -> None:
        try:
            p = TypingPayload.model_validate(data)
        except pydantic.ValidationError as e:
            conn.emit("error", {"message": "Validation failed", "details": _validation_details(e)})
            return

        room = chat_room(p.chat_id)
        if not self.manager.in_room(conn, room):
            try:
                chat = await self._db(_load_owned_chat, p.chat_id, conn.user_id)
            except SQLAlchemyError:
                logger.exception("chat.typing.load.error: chat=%s", p.chat_id)
                return
            if chat is None:
                conn.emit("error", {"message": "Chat not found", "chatId": p.chat_id})
                return
            self.manager.join(conn, room)

        self.manager.emit_to_room(
            room,
            "user-typing",
            {"userId": conn.user_id, "chatId": p.chat_id, "isTyping": p.is_typing},
            exclude=conn,
        )

    # Waits for in-flight sends; used at shutdown so replies still reach the store
    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _echo_ids(data: dict) -> dict:
    out = {}
    if isinstance(data.get("chatId"), str):
        out["chatId"] = data["chatId"]
    if isinstance(data.get("requestId"), str):
        out["requestId"] = data["requestId"]
    return out


async def _settle(task: asyncio.Task, event: str, chat_id: str) -> None:
    try:
        await task
    except ChatAppError as e:
        logger.warning("%s: chat=%s err=%s", event, chat_id, e.message)
    except Exception:
        logger.exception("%s: chat=%s", event, chat_id)


_legacy_tasks: set[asyncio.Task] = set()


# Plain-text streamed reply for POST /api/chats/{id}/messages. The user message is already
# persisted; generation runs detached so a client disconnect never loses the assistant message.
def build_legacy_stream_response(
    *,
    session_factory: sessionmaker,
    gateway: ModelGateway,
    chat_id: str,
    content: str,
    history: list[dict],
) -> StreamingResponse:
    async def generator():
        queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        stream_enabled = asyncio.Event()
        stream_enabled.set()

        def _emit_nowait(text: str) -> None:
            if stream_enabled.is_set():
                queue.put_nowait(text)

        async def _run_generation_bg() -> None:
            full_response = ""
            t0 = time.perf_counter()
            try:
                async for piece in gateway.generate_stream(content, history):
                    full_response += piece
                    _emit_nowait(piece)
                if not full_response.strip():
                    raise UpstreamGenerationError("The model returned an empty response")
                await run_in_session(session_factory, _insert_message, chat_id, "assistant", full_response, None)
                logger.info(
                    "stream.legacy.done: chat=%s chars=%d ms=%d",
                    chat_id,
                    len(full_response),
                    int((time.perf_counter() - t0) * 1000),
                )
            except Exception:
                logger.exception("chat.stream.legacy.error: chat=%s", chat_id)
                _emit_nowait(LEGACY_ERROR_SUFFIX)
            finally:
                _emit_nowait(None)

        gen_task = asyncio.create_task(_run_generation_bg())
        _legacy_tasks.add(gen_task)
        gen_task.add_done_callback(_legacy_tasks.discard)

        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
        except asyncio.CancelledError:
            stream_enabled.clear()
            raise
        finally:
            stream_enabled.clear()

    return StreamingResponse(
        generator(),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
