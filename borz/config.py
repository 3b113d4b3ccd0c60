from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_ROOT / ".env", override=False)

logger = logging.getLogger(__name__)

SENTINEL_TITLE = "New Chat"

_DEV_JWT_SECRET = "borz-dev-secret-change-me"
_DEFAULT_CORS_ORIGINS = (
    "http://localhost:8081",
    "http://localhost:19000",
    "http://localhost:19006",
    "http://10.0.2.2:3000",
)
_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


# Parses "7d" / "12h" / "30m" / "45s" / "3600" into seconds
def parse_duration(value: str) -> int:
    m = _DURATION_RE.match(value or "")
    if not m:
        raise ValueError(f"Invalid duration: {value!r}")
    return int(m.group(1)) * _DURATION_UNITS[m.group(2)]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _normalize_database_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg2://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./borz.db"
    jwt_secret: str = _DEV_JWT_SECRET
    session_ttl_seconds: int = 7 * 86400
    reset_token_ttl_seconds: int = 3600
    model_provider: str = "gemini"
    model_name: str = "gemini-2.0-flash"
    vision_model_name: str = "gemini-1.5-flash"
    model_temperature: float = 0.7
    model_top_p: float = 0.95
    history_limit: int = 10
    replay_chunk_size: int = 24
    replay_chunk_delay_ms: int = 15
    cors_origins: tuple[str, ...] = field(default=_DEFAULT_CORS_ORIGINS)
    redis_url: Optional[str] = None
    send_rate_limit_per_minute: int = 30
    auto_create_tables: bool = True
    expose_reset_token: bool = True


# Reads settings from the environment (.env is loaded at import, never overriding real env vars)
def load_settings() -> Settings:
    jwt_secret = os.getenv("JWT_SECRET")
    if not jwt_secret:
        logger.warning("config.jwt_secret.missing: using development secret")
        jwt_secret = _DEV_JWT_SECRET

    extra_origins = [o.strip() for o in (os.getenv("CORS_ORIGINS") or "").split(",") if o.strip()]
    is_production = (os.getenv("ENVIRONMENT") or "").strip().lower() == "production"

    return Settings(
        database_url=_normalize_database_url(os.getenv("DATABASE_URL") or "sqlite:///./borz.db"),
        jwt_secret=jwt_secret,
        session_ttl_seconds=parse_duration(os.getenv("JWT_EXPIRATION") or "7d"),
        reset_token_ttl_seconds=int(os.getenv("RESET_TOKEN_TTL_SECONDS") or 3600),
        model_provider=(os.getenv("MODEL_PROVIDER") or "gemini").strip().lower(),
        model_name=os.getenv("MODEL_NAME") or "gemini-2.0-flash",
        vision_model_name=os.getenv("VISION_MODEL_NAME") or "gemini-1.5-flash",
        model_temperature=float(os.getenv("MODEL_TEMPERATURE") or 0.7),
        model_top_p=float(os.getenv("MODEL_TOP_P") or 0.95),
        history_limit=int(os.getenv("HISTORY_LIMIT") or 10),
        replay_chunk_size=int(os.getenv("REPLAY_CHUNK_SIZE") or 24),
        replay_chunk_delay_ms=int(os.getenv("REPLAY_CHUNK_DELAY_MS") or 15),
        cors_origins=tuple(extra_origins) + _DEFAULT_CORS_ORIGINS,
        redis_url=os.getenv("REDIS_URL") or None,
        send_rate_limit_per_minute=int(os.getenv("SEND_RATE_LIMIT_PER_MINUTE") or 30),
        auto_create_tables=_env_bool("AUTO_CREATE_TABLES", True),
        expose_reset_token=not is_production,
    )
