import logging
import time
from dataclasses import dataclass
from typing import Optional

import bcrypt
from fastapi import Request
from jose import ExpiredSignatureError, JWTError, jwt

from borz.config import Settings
from borz.errors import AuthError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_TOKEN_TYPE = "session"
RESET_TOKEN_TYPE = "password-reset"
BCRYPT_ROUNDS = 10


@dataclass(frozen=True)
class TokenIdentity:
    user_id: str
    email: Optional[str] = None


# Issues and verifies signed, time-bounded tokens; the `type` claim keeps reset and session tokens apart
class SessionTokens:
    def __init__(self, secret: str, session_ttl_seconds: int, reset_ttl_seconds: int = 3600):
        if not secret:
            raise ValueError("A signing secret is required.")
        self._secret = secret
        self.session_ttl_seconds = int(session_ttl_seconds)
        self.reset_ttl_seconds = int(reset_ttl_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionTokens":
        return cls(settings.jwt_secret, settings.session_ttl_seconds, settings.reset_token_ttl_seconds)

    def _encode(self, claims: dict, ttl_seconds: int) -> str:
        now = int(time.time())
        payload = {**claims, "iat": now, "exp": now + ttl_seconds}
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def _decode(self, token: str, expected_type: str) -> dict:
        if not token or token.count(".") != 2:
            raise AuthError("Token is not a valid JWT.")
        try:
            payload = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise AuthError("Token has expired.")
        except JWTError:
            raise AuthError("Invalid token.")
        if payload.get("type") != expected_type:
            raise AuthError("Invalid token type.")
        if not payload.get("userId"):
            raise AuthError("Token is missing the user id.")
        return payload

    def issue(self, user_id: str, email: str) -> str:
        return self._encode({"userId": user_id, "email": email, "type": SESSION_TOKEN_TYPE}, self.session_ttl_seconds)

    def verify(self, token: str) -> TokenIdentity:
        payload = self._decode(token, SESSION_TOKEN_TYPE)
        return TokenIdentity(user_id=str(payload["userId"]), email=payload.get("email"))

    def issue_reset(self, user_id: str) -> str:
        return self._encode({"userId": user_id, "type": RESET_TOKEN_TYPE}, self.reset_ttl_seconds)

    def verify_reset(self, token: str) -> str:
        payload = self._decode(token, RESET_TOKEN_TYPE)
        return str(payload["userId"])


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


# Pulls the token out of "Authorization: Bearer <token>"
def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header or not auth_header.startswith("Bearer "):
        raise AuthError("No token provided")
    return auth_header.split(" ", 1)[1].strip()


def get_session_tokens(request: Request) -> SessionTokens:
    return request.app.state.session_tokens


# FastAPI dependency: verifies the bearer token from the Authorization header
def get_current_identity(request: Request) -> TokenIdentity:
    token = extract_bearer_token(request.headers.get("Authorization"))
    try:
        return get_session_tokens(request).verify(token)
    except AuthError as e:
        logger.info("auth.token.rejected: %s", e.message)
        raise AuthError("Invalid or expired token")
