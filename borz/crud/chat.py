from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, func, select, update

from borz.config import SENTINEL_TITLE
from borz.models.chat_models import Chat, Message


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Create a new chat for a user
def create_chat(session, user_id, title=None):
    now = _utcnow()
    chat = Chat(user_id=user_id, title=title or SENTINEL_TITLE, created_at=now, updated_at=now)
    session.add(chat)
    session.flush()
    return chat


# Get a chat only if it belongs to the user (None covers both "absent" and "not yours")
def get_owned_chat(session, chat_id, user_id) -> Optional[Chat]:
    stmt = select(Chat).where(Chat.id == chat_id, Chat.user_id == user_id)
    return session.execute(stmt).scalar_one_or_none()


# List a user's chats with message counts, most recently active first
def get_chats_with_counts(session, user_id):
    stmt = (
        select(Chat, func.count(Message.id).label("message_count"))
        .outerjoin(Message, Message.chat_id == Chat.id)
        .where(Chat.user_id == user_id)
        .group_by(Chat.id)
        .order_by(Chat.updated_at.desc())
    )
    return [(chat, int(count or 0)) for chat, count in session.execute(stmt).all()]


# Create a new chat message
def create_chat_message(session, chat_id, role, content, meta=None):
    msg = Message(chat_id=chat_id, role=role, content=content, meta=meta, created_at=_utcnow())
    session.add(msg)
    session.flush()
    return msg


# Get full chat history in creation order
def get_chat_history(session, chat_id):
    stmt = select(Message).where(Message.chat_id == chat_id).order_by(Message.created_at, Message.id)
    return session.execute(stmt).scalars().all()


# Get the last `limit` messages of a chat, returned oldest-first
def get_recent_messages(session, chat_id, limit):
    stmt = (
        select(Message)
        .where(Message.chat_id == chat_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
    )
    rows = session.execute(stmt).scalars().all()
    return list(reversed(rows))


def count_messages(session, chat_id) -> int:
    stmt = select(func.count(Message.id)).where(Message.chat_id == chat_id)
    return int(session.execute(stmt).scalar_one())


def touch_chat(session, chat_id, title=None):
    chat = session.get(Chat, chat_id)
    if chat is None:
        return None
    if title is not None:
        chat.title = title
    chat.updated_at = _utcnow()
    session.flush()
    return chat


# Set the title only while it still holds the sentinel, as one conditional UPDATE so concurrent
# first sends cannot both win; returns True when this call changed it
def set_title_if_sentinel(session, chat_id, title) -> bool:
    stmt = (
        update(Chat)
        .where(Chat.id == chat_id, Chat.title == SENTINEL_TITLE)
        .values(title=title, updated_at=_utcnow())
        .execution_options(synchronize_session="fetch")
    )
    result = session.execute(stmt)
    session.flush()
    return result.rowcount == 1


def delete_chat_messages(session, chat_id) -> int:
    result = session.execute(delete(Message).where(Message.chat_id == chat_id))
    session.flush()
    return result.rowcount or 0
