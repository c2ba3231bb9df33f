"""Error taxonomy shared by the store, allocator, state machine and API.

Each error carries a stable ``code`` and the HTTP status the API answers
with, so route handlers never have to translate them one by one.
"""

from __future__ import annotations

from typing import Any


class QueueError(Exception):
    code = "internal"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)

    def to_message(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message}


class NotFound(QueueError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class LaneInactive(QueueError):
    code = "lane_inactive"
    status_code = 409
    default_message = "Lane is inactive"


class InvalidState(QueueError):
    code = "invalid_state"
    status_code = 409
    default_message = "Operation not allowed in the current state"


class Forbidden(QueueError):
    code = "forbidden"
    status_code = 403
    default_message = "Not allowed"


class Conflict(QueueError):
    """Concurrent update lost the race twice in a row."""

    code = "conflict"
    status_code = 409
    default_message = "Concurrent update, please retry"


class DuplicateAssignment(QueueError):
    code = "duplicate_assignment"
    status_code = 409
    default_message = "Staff member is already assigned"


class AllocatorExhausted(QueueError):
    code = "allocator_exhausted"
    status_code = 400
    default_message = "All queue numbers for today are in use. Please contact admin."


class Internal(QueueError):
    pass
