import os
from typing import NamedTuple, Optional

from openai import AsyncOpenAI


class ProviderConfig(NamedTuple):
    api_key_env: str
    base_url: Optional[str]


PROVIDERS: dict[str, ProviderConfig] = {
    "openai": ProviderConfig("OPENAI_API_KEY", None),
    "gemini": ProviderConfig("GEMINI_API_KEY", "https://generativelanguage.googleapis.com/v1beta/openai/"),
    "grok": ProviderConfig("GROK_API_KEY", "https://api.x.ai/v1"),
    "anthropic": ProviderConfig("ANTHROPIC_API_KEY", "https://api.anthropic.com/v1"),
}

DEFAULT_PROVIDER = "gemini"


def resolve_provider(provider: Optional[str]) -> tuple[str, ProviderConfig]:
    name = (provider or DEFAULT_PROVIDER).strip().lower()
    cfg = PROVIDERS.get(name)
    if cfg is None:
        raise ValueError(f"Unsupported provider: {name} (expected one of {', '.join(sorted(PROVIDERS))})")
    return name, cfg


# Build the async client for a provider; the gateway turns the ValueError into a generation error.
def get_async_openai_compatible_client(
    provider: Optional[str],
    *,
    api_key: Optional[str] = None,
    timeout: float = 120.0,
) -> AsyncOpenAI:
    name, cfg = resolve_provider(provider)
    key = api_key or os.getenv(cfg.api_key_env)
    if not key:
        raise ValueError(f"Missing API key for provider '{name}'. Set {cfg.api_key_env}.")
    return AsyncOpenAI(api_key=key, base_url=cfg.base_url, timeout=timeout, max_retries=0)
