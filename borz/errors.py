from __future__ import annotations

from typing import Any, Optional


class ChatAppError(Exception):
    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message}


class ValidationError(ChatAppError):
    status_code = 400
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, details: Optional[list[dict]] = None):
        super().__init__(message)
        self.details = details or []

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.details:
            payload["details"] = self.details
        return payload


class AuthError(ChatAppError):
    status_code = 401
    default_message = "Invalid or expired token"


# Absent and not-owned chats share this outcome
class NotFoundOrForbidden(ChatAppError):
    status_code = 404
    default_message = "Chat not found"


class UserNotFound(ChatAppError):
    status_code = 404
    default_message = "User not found"


class RateLimited(ChatAppError):
    status_code = 429
    default_message = "Too many messages"

    def __init__(self, wait_seconds: int):
        super().__init__(f"Too many messages. Please wait {wait_seconds} seconds before trying again.")
        self.wait_seconds = wait_seconds


class UpstreamGenerationError(ChatAppError):
    status_code = 502
    default_message = "Failed to generate AI response"


class UnsupportedDocumentType(ChatAppError):
    status_code = 415
    default_message = "Unsupported document type"


class EmptyDocument(ChatAppError):
    status_code = 422
    default_message = "No text could be extracted from the document"


class PersistenceError(ChatAppError):
    status_code = 500
    default_message = "Failed to save data"
