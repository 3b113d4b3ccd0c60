from __future__ import annotations

import logging
from typing import Any, Iterator, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class ChatAPIError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


# REST transport for the chat server; carries the session token as a bearer header
class ChatAPI:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _raise_for_error(self, response: requests.Response, fallback: str) -> None:
        if response.ok:
            return
        try:
            message = response.json().get("error") or fallback
        except ValueError:
            message = fallback
        logger.warning("api.error: status=%d message=%s", response.status_code, message)
        raise ChatAPIError(response.status_code, message)

    def _request(self, method: str, path: str, fallback: str, **kwargs: Any) -> dict:
        response = self.session.request(
            method, f"{self.base_url}{path}", headers=self._headers(), timeout=self.timeout, **kwargs
        )
        self._raise_for_error(response, fallback)
        return response.json()

    # Auth

    def signup(self, name: str, email: str, password: str) -> dict:
        data = self._request("POST", "/auth/signup", "Failed to sign up", json={"name": name, "email": email, "password": password})
        self.token = data["token"]
        return data

    def login(self, email: str, password: str) -> dict:
        data = self._request("POST", "/auth/login", "Failed to log in", json={"email": email, "password": password})
        self.token = data["token"]
        return data

    def me(self) -> dict:
        return self._request("GET", "/auth/me", "Failed to fetch profile")

    def forgot_password(self, email: str) -> dict:
        return self._request("POST", "/auth/forgot-password", "Failed to request reset", json={"email": email})

    def reset_password(self, token: str, password: str) -> dict:
        return self._request("POST", "/auth/reset-password", "Failed to reset password", json={"token": token, "password": password})

    # Chats

    def list_chats(self) -> list[dict]:
        return self._request("GET", "/api/chats", "Failed to fetch chats")["chats"]

    def create_chat(self, title: Optional[str] = None) -> dict:
        body = {"title": title} if title else {}
        return self._request("POST", "/api/chats", "Failed to create chat", json=body)["chat"]

    def get_chat(self, chat_id: str) -> dict:
        return self._request("GET", f"/api/chats/{chat_id}", "Failed to fetch chat")["chat"]

    def rename_chat(self, chat_id: str, title: str) -> dict:
        return self._request("PATCH", f"/api/chats/{chat_id}", "Failed to update chat", json={"title": title})["chat"]

    def delete_chat(self, chat_id: str) -> None:
        self._request("DELETE", f"/api/chats/{chat_id}", "Failed to delete chat")

    def clear_messages(self, chat_id: str) -> None:
        self._request("DELETE", f"/api/chats/{chat_id}/messages", "Failed to clear chat")

    # Non-realtime send; yields the reply text as the server streams it
    def stream_message(self, chat_id: str, content: str) -> Iterator[str]:
        response = self.session.post(
            f"{self.base_url}/api/chats/{chat_id}/messages",
            headers=self._headers(),
            json={"content": content},
            timeout=self.timeout,
            stream=True,
        )
        self._raise_for_error(response, "Failed to send message")
        with response:
            for piece in response.iter_content(chunk_size=None, decode_unicode=True):
                if piece:
                    yield piece
