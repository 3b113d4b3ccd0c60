from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from openai import AsyncOpenAI, OpenAIError

from borz.config import Settings
from borz.errors import UpstreamGenerationError, ValidationError
from borz.services.documents import ExtractedDocument, extract_document_text
from borz.services.openai_compatible_client import get_async_openai_compatible_client

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_PROMPT = "Analyze this image"
DEFAULT_DOCUMENT_PROMPT = "Analyze this document"
MAX_DOCUMENT_CHARS = 30000
ASSISTANT_ROLE = "assistant"


# The provider rejects histories that open on an assistant turn: drop leading non-user entries
def trim_history_for_provider(history: Iterable[dict]) -> list[dict]:
    entries = list(history or [])
    for idx, entry in enumerate(entries):
        if entry.get("role") == "user":
            return entries[idx:]
    return []


def _to_provider_turns(history: Iterable[dict]) -> list[dict]:
    turns: list[dict] = []
    for entry in trim_history_for_provider(history):
        content = entry.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        role = "user" if entry.get("role") == "user" else ASSISTANT_ROLE
        turns.append({"role": role, "content": content})
    return turns


# Builds the prompt sent for a document: file context, extracted text, then the user's request
def build_document_prompt(prompt: str, document: ExtractedDocument) -> str:
    header = f'The user attached a document named "{document.file_name}"'
    if document.page_count:
        header += f" ({document.page_count} page{'s' if document.page_count != 1 else ''})"
    header += "."
    lines = [header]
    if document.metadata:
        lines.append("Document metadata: " + ", ".join(f"{k}: {v}" for k, v in sorted(document.metadata.items())))

    text = document.text
    truncated = len(text) > MAX_DOCUMENT_CHARS
    if truncated:
        text = text[:MAX_DOCUMENT_CHARS]

    lines.append("--- DOCUMENT START ---")
    lines.append(text)
    lines.append("--- DOCUMENT END ---")
    if truncated:
        lines.append(f"(The document was truncated to its first {MAX_DOCUMENT_CHARS} characters.)")
    lines.append("")
    lines.append(f"User request: {prompt.strip() or DEFAULT_DOCUMENT_PROMPT}")
    return "\n".join(lines)


# Wraps the external generation provider behind text, streaming, image and document operations
class ModelGateway:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        model: str,
        vision_model: Optional[str] = None,
        temperature: float = 0.7,
        top_p: float = 0.95,
        client_factory: Optional[Callable[[], AsyncOpenAI]] = None,
    ):
        if client is None and client_factory is None:
            raise ValueError("Either a client or a client_factory is required.")
        self._client = client
        self._client_factory = client_factory
        self.model = model
        self.vision_model = vision_model or model
        self.temperature = temperature
        self.top_p = top_p

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModelGateway":
        return cls(
            model=settings.model_name,
            vision_model=settings.vision_model_name,
            temperature=settings.model_temperature,
            top_p=settings.model_top_p,
            client_factory=lambda: get_async_openai_compatible_client(settings.model_provider),
        )

    # The provider client is built on first use so the app can boot without credentials
    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            try:
                self._client = self._client_factory()
            except ValueError as e:
                raise UpstreamGenerationError(f"Model provider is not configured: {e}")
        return self._client

    def _messages(self, prompt: str, history: Optional[Iterable[dict]]) -> list[dict]:
        return [*_to_provider_turns(history or []), {"role": "user", "content": prompt}]

    def _sampling(self) -> dict[str, Any]:
        return {"temperature": self.temperature, "top_p": self.top_p}

    async def _complete(self, model: str, messages: list[dict], what: str) -> str:
        try:
            response = await self.client.chat.completions.create(model=model, messages=messages, **self._sampling())
        except OpenAIError as e:
            logger.error("gateway.%s.error: %s", what, e.__class__.__name__)
            raise UpstreamGenerationError(f"Failed to generate AI response: {e}")
        content = response.choices[0].message.content if response.choices else None
        return content or ""

    async def generate(self, prompt: str, history: Optional[Iterable[dict]] = None) -> str:
        return await self._complete(self.model, self._messages(prompt, history), "generate")

    # Yields non-empty text fragments as the provider produces them; already-yielded text is never retracted
    async def generate_stream(self, prompt: str, history: Optional[Iterable[dict]] = None) -> AsyncIterator[str]:
        messages = self._messages(prompt, history)
        t0 = time.perf_counter()
        count = 0
        try:
            stream = await self.client.chat.completions.create(
                model=self.model, messages=messages, stream=True, **self._sampling()
            )
        except OpenAIError as e:
            logger.error("gateway.stream.open.error: %s", e.__class__.__name__)
            raise UpstreamGenerationError(f"Failed to stream AI response: {e}")

        try:
            async for chunk in stream:
                for piece in _extract_text_pieces(chunk):
                    count += 1
                    yield piece
        except OpenAIError as e:
            logger.error("gateway.stream.error: after=%d chunks err=%s", count, e.__class__.__name__)
            raise UpstreamGenerationError(f"Failed to stream AI response: {e}")
        finally:
            try:
                await stream.close()
            except Exception:
                pass
        logger.info("gateway.stream.done: chunks=%d ms=%d", count, int((time.perf_counter() - t0) * 1000))

    async def generate_with_image(self, prompt: str, image_bytes: bytes, mime_type: str) -> str:
        if not (mime_type or "").lower().startswith("image/"):
            raise ValidationError(f"Unsupported image type: {mime_type or 'unknown'}")
        data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt.strip() or DEFAULT_IMAGE_PROMPT},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }
        ]
        return await self._complete(self.vision_model, messages, "image")

    async def generate_with_document(self, prompt: str, document_bytes: bytes, mime_type: str, file_name: str) -> str:
        loop = asyncio.get_running_loop()
        document = await loop.run_in_executor(None, extract_document_text, document_bytes, mime_type, file_name)
        augmented = build_document_prompt(prompt, document)
        return await self._complete(self.vision_model, [{"role": "user", "content": augmented}], "document")

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.close()
            except Exception:
                pass


# Pull streamed text out of an OpenAI-compatible chunk (delta.content, or choice.text on some providers)
def _extract_text_pieces(chunk: Any) -> list[str]:
    pieces: list[str] = []
    for choice in getattr(chunk, "choices", None) or []:
        delta = getattr(choice, "delta", None)
        content = getattr(delta, "content", None) if delta is not None else None
        if isinstance(content, str) and content:
            pieces.append(content)
        text_piece = getattr(choice, "text", None)
        if isinstance(text_piece, str) and text_piece:
            pieces.append(text_piece)
    return pieces
