import asyncio
import threading
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from borz.app import create_app
from borz.config import Settings
from borz.database import init_db, make_engine, make_session_factory
from borz.errors import UpstreamGenerationError


# Scripted stand-in for the model gateway
class FakeGateway:
    def __init__(self):
        self.chunks = ["Hello", ", ", "world", "!"]
        self.single_reply = "This reply is long enough to be cut into several replay chunks."
        self.fail_after: Optional[int] = None
        self.single_error: Optional[Exception] = None
        self.release = threading.Event()
        self.release.set()
        self.calls: list[tuple] = []
        self.closed = False

    async def _hold(self):
        while not self.release.is_set():
            await asyncio.sleep(0.01)

    async def generate_stream(self, prompt, history=None):
        self.calls.append(("stream", prompt, list(history or [])))
        await self._hold()
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i >= self.fail_after:
                raise UpstreamGenerationError("Failed to stream AI response: provider hung up")
            yield chunk
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise UpstreamGenerationError("Failed to stream AI response: provider hung up")

    async def generate_with_image(self, prompt, image_bytes, mime_type):
        self.calls.append(("image", prompt, mime_type, image_bytes))
        await self._hold()
        if self.single_error is not None:
            raise self.single_error
        return self.single_reply

    async def generate_with_document(self, prompt, document_bytes, mime_type, file_name):
        self.calls.append(("document", prompt, mime_type, file_name, document_bytes))
        await self._hold()
        if self.single_error is not None:
            raise self.single_error
        return self.single_reply

    async def close(self):
        self.closed = True


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'borz-test.db'}",
        jwt_secret="test-secret",
        replay_chunk_size=24,
        replay_chunk_delay_ms=0,
        redis_url=None,
        expose_reset_token=True,
    )


@pytest.fixture
def engine(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(settings, engine, session_factory, gateway):
    return create_app(settings, engine=engine, session_factory=session_factory, gateway=gateway)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def signup(client, email="ada@example.com", name="Ada Lovelace", password="correct-horse") -> tuple[str, str]:
    r = client.post("/auth/signup", json={"name": name, "email": email, "password": password})
    assert r.status_code == 201, r.text
    body = r.json()
    return body["token"], body["user"]["id"]


def create_chat(client, token: str, title: Optional[str] = None) -> dict:
    body = {"title": title} if title else {}
    r = client.post("/api/chats", json=body, headers=auth_headers(token))
    assert r.status_code == 201, r.text
    return r.json()["chat"]
