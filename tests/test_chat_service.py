from datetime import datetime, timedelta, timezone

import pytest

from borz.auth import hash_password
from borz.config import SENTINEL_TITLE
from borz.crud import chat as chat_crud
from borz.crud import user as user_crud
from borz.errors import NotFoundOrForbidden
from borz.models import Chat, Message
from borz.services.chat_service import ChatService, derive_title, should_auto_title
from borz.services.model_gateway import trim_history_for_provider


@pytest.fixture
def users(db):
    ada = user_crud.create_user(db, "Ada", "ada@example.com", hash_password("correct-horse"))
    bob = user_crud.create_user(db, "Bob", "bob@example.com", hash_password("correct-horse"))
    db.commit()
    return ada, bob


def _add_messages(db, chat_id, count):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        db.add(Message(chat_id=chat_id, role=role, content=f"m{i}", created_at=base + timedelta(seconds=i)))
    db.commit()


def test_derive_title_short_text_is_kept():
    assert derive_title("What is a monad?") == "What is a monad?"
    assert derive_title("  spaced  ") == "  spaced  "


def test_derive_title_truncates_with_ellipsis():
    text = "x" * 80
    assert derive_title(text) == "x" * 50 + "..."
    assert derive_title("y" * 50) == "y" * 50


def test_derive_title_counts_trailing_whitespace():
    text = "a" * 48 + "   "
    assert derive_title(text) == text[:50] + "..."


def test_should_auto_title_only_for_fresh_sentinel_chats():
    assert should_auto_title(SENTINEL_TITLE, 0, "hello")
    assert not should_auto_title(SENTINEL_TITLE, 2, "hello")
    assert not should_auto_title("Trip planning", 0, "hello")
    assert not should_auto_title(SENTINEL_TITLE, 0, "   ")


def test_create_chat_defaults_to_sentinel_title(db, users):
    ada, _ = users
    chat = ChatService(db).create_chat(user_id=ada.id)
    assert chat.title == SENTINEL_TITLE
    assert chat.messages == []


def test_list_chats_orders_by_activity_and_counts_messages(db, users):
    ada, bob = users
    svc = ChatService(db)
    older = svc.create_chat(user_id=ada.id, title="older")
    newer = svc.create_chat(user_id=ada.id, title="newer")
    svc.create_chat(user_id=bob.id, title="not mine")
    _add_messages(db, older.id, 3)
    chat_crud.touch_chat(db, older.id)
    db.commit()

    listed = svc.list_chats(user_id=ada.id).chats
    assert [c.id for c in listed] == [older.id, newer.id]
    assert [c.message_count for c in listed] == [3, 0]


def test_ownership_isolation(db, users):
    ada, bob = users
    svc = ChatService(db)
    chat = svc.create_chat(user_id=ada.id)
    with pytest.raises(NotFoundOrForbidden):
        svc.get_chat(chat_id=chat.id, user_id=bob.id)
    with pytest.raises(NotFoundOrForbidden):
        svc.rename_chat(chat_id=chat.id, user_id=bob.id, title="mine now")
    with pytest.raises(NotFoundOrForbidden):
        svc.delete_chat(chat_id=chat.id, user_id=bob.id)
    with pytest.raises(NotFoundOrForbidden):
        svc.clear_messages(chat_id=chat.id, user_id=bob.id)
    with pytest.raises(NotFoundOrForbidden):
        svc.get_chat(chat_id="does-not-exist", user_id=ada.id)


def test_get_chat_returns_messages_in_creation_order(db, users):
    ada, _ = users
    svc = ChatService(db)
    chat = svc.create_chat(user_id=ada.id)
    _add_messages(db, chat.id, 4)
    full = svc.get_chat(chat_id=chat.id, user_id=ada.id)
    assert [m.content for m in full.messages] == ["m0", "m1", "m2", "m3"]


def test_recent_history_is_bounded_and_oldest_first(db, users):
    ada, _ = users
    svc = ChatService(db, history_limit=10)
    chat = svc.create_chat(user_id=ada.id)
    _add_messages(db, chat.id, 13)
    history = svc.get_recent_history(chat_id=chat.id)
    assert [h["content"] for h in history] == [f"m{i}" for i in range(3, 13)]


def test_windowed_history_is_trimmed_to_start_on_a_user_turn(db, users):
    ada, _ = users
    svc = ChatService(db, history_limit=4)
    chat = svc.create_chat(user_id=ada.id)
    _add_messages(db, chat.id, 5)
    history = svc.get_recent_history(chat_id=chat.id)
    assert history[0]["role"] == "assistant"
    trimmed = trim_history_for_provider(history)
    assert [h["content"] for h in trimmed] == ["m2", "m3", "m4"]


def test_trim_history_all_assistant_yields_empty():
    assert trim_history_for_provider([{"role": "assistant", "content": "hi"}]) == []
    assert trim_history_for_provider([]) == []


def test_rename_bumps_updated_at(db, users):
    ada, _ = users
    svc = ChatService(db)
    chat = svc.create_chat(user_id=ada.id)
    renamed = svc.rename_chat(chat_id=chat.id, user_id=ada.id, title="  Trip planning ")
    assert renamed.title == "Trip planning"
    assert renamed.updated_at >= chat.updated_at


def test_clear_messages_is_idempotent(db, users):
    ada, _ = users
    svc = ChatService(db)
    chat = svc.create_chat(user_id=ada.id)
    _add_messages(db, chat.id, 2)
    svc.clear_messages(chat_id=chat.id, user_id=ada.id)
    svc.clear_messages(chat_id=chat.id, user_id=ada.id)
    assert svc.get_chat(chat_id=chat.id, user_id=ada.id).messages == []


def test_delete_chat_removes_its_messages(db, users):
    ada, _ = users
    svc = ChatService(db)
    chat = svc.create_chat(user_id=ada.id)
    _add_messages(db, chat.id, 2)
    svc.delete_chat(chat_id=chat.id, user_id=ada.id)
    assert chat_crud.count_messages(db, chat.id) == 0
    with pytest.raises(NotFoundOrForbidden):
        svc.get_chat(chat_id=chat.id, user_id=ada.id)


def test_prepare_send_persists_user_message_and_titles_fresh_chat(db, users):
    ada, _ = users
    svc = ChatService(db)
    chat = svc.create_chat(user_id=ada.id)
    history = svc.prepare_send(chat_id=chat.id, user_id=ada.id, content="Plan a weekend in Lisbon")
    assert history == []

    svc.prepare_send(chat_id=chat.id, user_id=ada.id, content="Something else entirely")
    full = svc.get_chat(chat_id=chat.id, user_id=ada.id)
    assert full.title == "Plan a weekend in Lisbon"
    assert [m.role for m in full.messages] == ["user", "user"]


def test_set_title_if_sentinel_only_fires_once(db, users):
    ada, _ = users
    chat = chat_crud.create_chat(db, ada.id)
    db.commit()
    assert chat_crud.set_title_if_sentinel(db, chat.id, "First")
    assert not chat_crud.set_title_if_sentinel(db, chat.id, "Second")
    db.commit()
    assert chat_crud.get_owned_chat(db, chat.id, ada.id).title == "First"


def test_set_title_if_sentinel_with_two_sessions_has_one_winner(db, users, session_factory):
    ada, _ = users
    chat = chat_crud.create_chat(db, ada.id)
    db.commit()

    first, second = session_factory(), session_factory()
    try:
        # Both load the chat while it still carries the sentinel title
        assert first.get(Chat, chat.id).title == SENTINEL_TITLE
        assert second.get(Chat, chat.id).title == SENTINEL_TITLE

        assert chat_crud.set_title_if_sentinel(first, chat.id, "From first")
        first.commit()
        assert not chat_crud.set_title_if_sentinel(second, chat.id, "From second")
        second.commit()
    finally:
        first.close()
        second.close()

    db.expire_all()
    assert chat_crud.get_owned_chat(db, chat.id, ada.id).title == "From first"
