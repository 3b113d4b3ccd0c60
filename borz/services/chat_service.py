from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from borz.config import SENTINEL_TITLE
from borz.crud import chat as chat_crud
from borz.errors import NotFoundOrForbidden, PersistenceError
from borz.schemas.chat import ChatListOut, ChatOut, ChatSummaryOut, MessageOut

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50
DEFAULT_HISTORY_LIMIT = 10


# First 50 characters of the user's text, with an ellipsis only when something was cut
def derive_title(content: str) -> str:
    text = content or ""
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


# Auto-title fires once: sentinel title, no earlier messages, and some non-blank text to title from
def should_auto_title(current_title: str, prior_message_count: int, source: str) -> bool:
    return current_title == SENTINEL_TITLE and prior_message_count == 0 and bool((source or "").strip())


def message_out(msg) -> MessageOut:
    return MessageOut(
        id=msg.id,
        chat_id=msg.chat_id,
        content=msg.content,
        role=msg.role,
        created_at=msg.created_at,
        metadata=msg.meta,
    )


def chat_out(chat, messages=()) -> ChatOut:
    return ChatOut(
        id=chat.id,
        user_id=chat.user_id,
        title=chat.title,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
        messages=[message_out(m) for m in messages],
    )


# Chat lifecycle over the record store; every chat-scoped call re-checks ownership
class ChatService:
    def __init__(self, db: Session, *, history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.db = db
        self.history_limit = history_limit

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("chat.%s.commit.error", what)
            raise PersistenceError(f"Failed to {what.replace('_', ' ')}: {e.__class__.__name__}")

    def _owned_chat(self, chat_id: str, user_id: str):
        chat = chat_crud.get_owned_chat(self.db, chat_id, user_id)
        if chat is None:
            raise NotFoundOrForbidden()
        return chat

    def list_chats(self, *, user_id: str) -> ChatListOut:
        rows = chat_crud.get_chats_with_counts(self.db, user_id)
        return ChatListOut(
            chats=[
                ChatSummaryOut(
                    id=chat.id,
                    title=chat.title,
                    created_at=chat.created_at,
                    updated_at=chat.updated_at,
                    message_count=count,
                )
                for chat, count in rows
            ]
        )

    def create_chat(self, *, user_id: str, title: Optional[str] = None) -> ChatOut:
        title = (title or "").strip() or SENTINEL_TITLE
        chat = chat_crud.create_chat(self.db, user_id, title)
        self._commit("create_chat")
        logger.info("chat.create: chat=%s user=%s", chat.id, user_id)
        return chat_out(chat)

    def get_chat(self, *, chat_id: str, user_id: str) -> ChatOut:
        chat = self._owned_chat(chat_id, user_id)
        return chat_out(chat, chat_crud.get_chat_history(self.db, chat.id))

    # Last `limit` persisted messages as role/content pairs, oldest first
    def get_recent_history(self, *, chat_id: str, limit: Optional[int] = None) -> list[dict]:
        rows = chat_crud.get_recent_messages(self.db, chat_id, limit or self.history_limit)
        return [{"role": m.role, "content": m.content} for m in rows]

    def rename_chat(self, *, chat_id: str, user_id: str, title: str) -> ChatOut:
        chat = self._owned_chat(chat_id, user_id)
        chat_crud.touch_chat(self.db, chat.id, title=title.strip())
        self._commit("rename_chat")
        return chat_out(chat)

    def delete_chat(self, *, chat_id: str, user_id: str) -> None:
        chat = self._owned_chat(chat_id, user_id)
        self.db.delete(chat)
        self._commit("delete_chat")
        logger.info("chat.delete: chat=%s user=%s", chat_id, user_id)

    # Persists the user's message (auto-titling a fresh chat) and returns the history that preceded it
    def prepare_send(self, *, chat_id: str, user_id: str, content: str) -> list[dict]:
        chat = self._owned_chat(chat_id, user_id)
        history = self.get_recent_history(chat_id=chat.id)
        chat_crud.create_chat_message(self.db, chat.id, "user", content)
        if should_auto_title(chat.title, len(history), content):
            chat_crud.touch_chat(self.db, chat.id, title=derive_title(content))
        else:
            chat_crud.touch_chat(self.db, chat.id)
        self._commit("save_message")
        return history

    # Idempotent: clearing an empty chat still succeeds and bumps updated_at
    def clear_messages(self, *, chat_id: str, user_id: str) -> None:
        chat = self._owned_chat(chat_id, user_id)
        removed = chat_crud.delete_chat_messages(self.db, chat.id)
        chat_crud.touch_chat(self.db, chat.id)
        self._commit("clear_messages")
        logger.info("chat.clear: chat=%s removed=%d", chat_id, removed)
