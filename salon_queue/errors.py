"""Error taxonomy and the shared error envelope.

Every rejection the engine produces is a `QueueError` subclass carrying a
stable `code`, a user-facing message and whether the caller may retry. The
MQTT service turns them into the same envelope the other components use.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str
    retryable: bool = False

    def to_message(self, *, corr_id: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {
            "type": "error",
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if corr_id is not None:
            msg["corr_id"] = corr_id
        return msg


class QueueError(Exception):
    code = "internal_error"
    user_message = "An unexpected error occurred. Please try again."
    retryable = False

    def __init__(self, detail: str | None = None, **details: Any) -> None:
        super().__init__(detail or self.code)
        self.detail = detail
        self.details = details

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(self.code, self.detail or self.user_message, self.retryable)


# -------------------- validation errors --------------------


class ValidationError(QueueError):
    code = "invalid_input"
    user_message = "Invalid input provided."


class Unauthenticated(QueueError):
    code = "unauthenticated"
    user_message = "You must be logged in to perform this action."


class NotEntryOwner(QueueError):
    code = "not_entry_owner"
    user_message = "You can only manage your own queue entry."


class Forbidden(QueueError):
    code = "forbidden"
    user_message = "You do not have permission to manage this salon's queue."


class NotFound(QueueError):
    code = "queue_not_found"
    user_message = "Queue entry not found."


class SalonNotFound(QueueError):
    code = "salon_not_found"
    user_message = "Salon not found."


class ServiceNotFound(QueueError):
    code = "service_not_found"
    user_message = "One of the selected services is not offered by this salon."


# -------------------- business rejections --------------------


class InvalidTransition(QueueError):
    code = "invalid_status_transition"
    user_message = "This action is not available at this time."

    def __init__(self, current: str, event: str, detail: str | None = None) -> None:
        super().__init__(
            detail or f"cannot apply {event} to an entry in status {current}",
            current=current,
            event=event,
        )
        self.current = current
        self.event = event


class DuplicateActiveEntry(QueueError):
    code = "already_in_queue"
    user_message = "You are already in this salon's queue."


class ServiceBayOccupied(QueueError):
    code = "service_bay_occupied"
    user_message = "Another customer is being served. Complete that service first."


class EmptyQueue(QueueError):
    code = "empty_queue"
    user_message = "No customer is ready to be served."


class UserBanned(QueueError):
    code = "user_banned"
    user_message = "Your account has been restricted. Please contact support."


# -------------------- infrastructure failures --------------------


class PersistenceError(QueueError):
    code = "persistence_error"
    user_message = "A storage error occurred. Please try again."
    retryable = True
