"""Messaging error taxonomy.

Services raise these; the router turns them into HTTP responses. ``Transient``
is the only error that callers may retry, and only for idempotent operations.
"""

from __future__ import annotations

from typing import Any, Dict


class MessagingError(Exception):
    code = "E_MESSAGING"
    status_code = 500
    default_message = "Messaging error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidRequest(MessagingError):
    code = "E_INVALID_REQUEST"
    status_code = 400
    default_message = "Invalid request"


class NotFound(MessagingError):
    code = "E_NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class PermissionDenied(MessagingError):
    code = "E_PERMISSION_DENIED"
    status_code = 403
    default_message = "Not a participant of this conversation"


class EditWindowExpired(MessagingError):
    code = "E_EDIT_WINDOW_EXPIRED"
    status_code = 409
    default_message = "Edit time limit exceeded"


class NoChange(MessagingError):
    code = "E_NO_CHANGE"
    status_code = 409
    default_message = "No changes made to message"


class Conflict(MessagingError):
    code = "E_CONFLICT"
    status_code = 409
    default_message = "Concurrent update detected; reload and try again"


class Transient(MessagingError):
    code = "E_TRANSIENT"
    status_code = 503
    default_message = "Message store temporarily unavailable"


RETRYABLE = (Transient,)
