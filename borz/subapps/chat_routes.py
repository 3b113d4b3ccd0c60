import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from borz.auth import TokenIdentity, get_current_identity
from borz.database import get_db
from borz.errors import RateLimited
from borz.schemas.chat import (
    ChatCreateRequest,
    ChatEnvelope,
    ChatListOut,
    ChatUpdateRequest,
    SendMessageRequest,
    SuccessOut,
)
from borz.services.chat_service import ChatService
from borz.services.chat_stream import build_legacy_stream_response


router = APIRouter(prefix="/api/chats", tags=["chats"])


def _service(request: Request, db: Session) -> ChatService:
    return ChatService(db, history_limit=request.app.state.settings.history_limit)


# Lists the caller's chats, most recently active first
@router.get("")
def list_chats(
    request: Request,
    identity: TokenIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> ChatListOut:
    return _service(request, db).list_chats(user_id=identity.user_id)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_chat(
    request: Request,
    payload: Optional[ChatCreateRequest] = None,
    identity: TokenIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> ChatEnvelope:
    chat = _service(request, db).create_chat(user_id=identity.user_id, title=payload.title if payload else None)
    return ChatEnvelope(chat=chat)


# Chat with its full message history, oldest first
@router.get("/{chat_id}")
def get_chat(
    chat_id: str,
    request: Request,
    identity: TokenIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> ChatEnvelope:
    return ChatEnvelope(chat=_service(request, db).get_chat(chat_id=chat_id, user_id=identity.user_id))


@router.patch("/{chat_id}")
def rename_chat(
    chat_id: str,
    payload: ChatUpdateRequest,
    request: Request,
    identity: TokenIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> ChatEnvelope:
    chat = _service(request, db).rename_chat(chat_id=chat_id, user_id=identity.user_id, title=payload.title)
    return ChatEnvelope(chat=chat)


@router.delete("/{chat_id}")
def delete_chat(
    chat_id: str,
    request: Request,
    identity: TokenIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> SuccessOut:
    _service(request, db).delete_chat(chat_id=chat_id, user_id=identity.user_id)
    return SuccessOut()


# Removes every message but keeps the chat
@router.delete("/{chat_id}/messages")
def clear_messages(
    chat_id: str,
    request: Request,
    identity: TokenIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> SuccessOut:
    _service(request, db).clear_messages(chat_id=chat_id, user_id=identity.user_id)
    return SuccessOut()


# Non-realtime send: persists the user message, then streams the reply as plain text
@router.post("/{chat_id}/messages")
async def send_message(
    chat_id: str,
    payload: SendMessageRequest,
    request: Request,
    identity: TokenIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    loop = asyncio.get_running_loop()
    limiter = request.app.state.rate_limiter
    if limiter is not None:
        decision = await loop.run_in_executor(None, limiter.check, identity.user_id)
        if not decision.allowed:
            raise RateLimited(decision.wait_seconds)

    svc = _service(request, db)
    history = await loop.run_in_executor(
        None, lambda: svc.prepare_send(chat_id=chat_id, user_id=identity.user_id, content=payload.content)
    )
    return build_legacy_stream_response(
        session_factory=request.app.state.session_factory,
        gateway=request.app.state.gateway,
        chat_id=chat_id,
        content=payload.content,
        history=history,
    )
