import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from borz.errors import UpstreamGenerationError, ValidationError
from borz.services.documents import ExtractedDocument
from borz.services.model_gateway import ModelGateway, build_document_prompt


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text), text=None)])


def _connection_error():
    return openai.APIConnectionError(request=httpx.Request("POST", "https://provider.test/v1/chat/completions"))


class FakeStream:
    def __init__(self, pieces, fail_after=None):
        self.pieces = pieces
        self.fail_after = fail_after
        self.closed = False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for i, piece in enumerate(self.pieces):
            if self.fail_after is not None and i >= self.fail_after:
                raise _connection_error()
            yield _chunk(piece)

    async def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self):
        self.requests = []
        self.reply = "single-shot reply"
        self.stream = FakeStream(["Hel", "", "lo"])
        self.error = None

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        if kwargs.get("stream"):
            return self.stream
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.reply))])


class FakeOpenAI:
    def __init__(self):
        self.completions = FakeCompletions()
        self.chat = SimpleNamespace(completions=self.completions)
        self.closed = False

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_client():
    return FakeOpenAI()


@pytest.fixture
def gateway(fake_client):
    return ModelGateway(fake_client, model="text-model", vision_model="vision-model", temperature=0.5, top_p=0.9)


async def _drain(agen):
    return [piece async for piece in agen]


def test_stream_yields_non_empty_fragments(gateway, fake_client):
    pieces = asyncio.run(_drain(gateway.generate_stream("hi")))
    assert pieces == ["Hel", "lo"]
    assert fake_client.completions.stream.closed
    request = fake_client.completions.requests[0]
    assert request["model"] == "text-model"
    assert request["stream"] is True
    assert request["temperature"] == 0.5
    assert request["top_p"] == 0.9


def test_history_is_shaped_for_the_provider(gateway, fake_client):
    history = [
        {"role": "assistant", "content": "leading reply"},
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": "first answer"},
        {"role": "user", "content": "   "},
    ]
    asyncio.run(gateway.generate("second question", history))
    assert fake_client.completions.requests[0]["messages"] == [
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": "first answer"},
        {"role": "user", "content": "second question"},
    ]


def test_generate_returns_text(gateway):
    assert asyncio.run(gateway.generate("hi")) == "single-shot reply"


def test_provider_failure_on_open(gateway, fake_client):
    fake_client.completions.error = _connection_error()
    with pytest.raises(UpstreamGenerationError):
        asyncio.run(_drain(gateway.generate_stream("hi")))
    with pytest.raises(UpstreamGenerationError):
        asyncio.run(gateway.generate("hi"))


def test_provider_failure_mid_stream_keeps_yielded_text(gateway, fake_client):
    fake_client.completions.stream = FakeStream(["one", "two", "three"], fail_after=2)
    received = []

    async def consume():
        async for piece in gateway.generate_stream("hi"):
            received.append(piece)

    with pytest.raises(UpstreamGenerationError):
        asyncio.run(consume())
    assert received == ["one", "two"]
    assert fake_client.completions.stream.closed


def test_image_request_uses_vision_model_and_data_url(gateway, fake_client):
    text = asyncio.run(gateway.generate_with_image("", b"\x89PNG", "image/png"))
    assert text == "single-shot reply"
    request = fake_client.completions.requests[0]
    assert request["model"] == "vision-model"
    parts = request["messages"][0]["content"]
    assert parts[0] == {"type": "text", "text": "Analyze this image"}
    assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_image_request_rejects_non_image(gateway, fake_client):
    with pytest.raises(ValidationError):
        asyncio.run(gateway.generate_with_image("what is this", b"%PDF", "application/pdf"))
    assert fake_client.completions.requests == []


def test_document_request_embeds_extracted_text(gateway, fake_client):
    asyncio.run(gateway.generate_with_document("summarize", b"Revenue grew 12%.", "text/plain", "q3.txt"))
    prompt = fake_client.completions.requests[0]["messages"][0]["content"]
    assert '"q3.txt"' in prompt
    assert "--- DOCUMENT START ---\nRevenue grew 12%.\n--- DOCUMENT END ---" in prompt
    assert prompt.endswith("User request: summarize")


def test_document_prompt_truncates_long_text():
    doc = ExtractedDocument(kind="text", file_name="big.txt", text="a" * 40000, page_count=3, metadata={"author": "Ada"})
    prompt = build_document_prompt("", doc)
    assert "(3 pages)" in prompt
    assert "Document metadata: author: Ada" in prompt
    assert "truncated to its first 30000 characters" in prompt
    assert prompt.endswith("User request: Analyze this document")


def test_missing_provider_credentials_surface_as_upstream_error():
    def factory():
        raise ValueError("GEMINI_API_KEY is not set")

    gateway = ModelGateway(model="m", client_factory=factory)
    with pytest.raises(UpstreamGenerationError) as exc:
        asyncio.run(gateway.generate("hi"))
    assert "not configured" in exc.value.message


def test_close_closes_client(gateway, fake_client):
    asyncio.run(gateway.close())
    assert fake_client.closed
