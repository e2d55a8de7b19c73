"""Error taxonomy and the shared error envelope.

Every failure raised by the core derives from `QueueError` and carries a
stable `code`. Adapters (MQTT, HTTP) turn them into the same
`{"type": "error", "code": ..., "message": ...}` message via `ErrorResponse`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str

    def to_message(self, *, corr_id: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {"type": "error", "code": self.code, "message": self.message}
        if corr_id is not None:
            msg["corr_id"] = corr_id
        return msg


class QueueError(Exception):
    """Base class. Nothing in the core is fatal to the process."""

    code = "queue_error"

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(self.code, str(self))


# -------------------- state machine / validation --------------------


class InvalidTransition(QueueError):
    code = "invalid_transition"

    def __init__(self, current_status: str, action: str, reason: str | None = None) -> None:
        self.current_status = current_status
        self.action = action
        self.reason = reason
        msg = f"cannot {action} a token in status {current_status!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidPriority(QueueError):
    code = "invalid_priority"

    def __init__(self, priority: object) -> None:
        self.priority = priority
        super().__init__(f"priority must be an integer in 1..10, got {priority!r}")


class InvalidReorder(QueueError):
    code = "invalid_reorder"


class InvalidRating(QueueError):
    code = "invalid_rating"

    def __init__(self, rating: object) -> None:
        self.rating = rating
        super().__init__(f"rating must be an integer in 1..5, got {rating!r}")


# -------------------- business rules --------------------


class CapacityExceeded(QueueError):
    code = "capacity_exceeded"

    def __init__(self, department_id: str, limit: int) -> None:
        self.department_id = department_id
        self.limit = limit
        super().__init__(f"daily token limit of {limit} reached for department {department_id}")


class DepartmentClosed(QueueError):
    code = "department_closed"


class DuplicateActiveToken(QueueError):
    code = "duplicate_active_token"

    def __init__(self, customer_id: str, token_number: str) -> None:
        self.customer_id = customer_id
        self.token_number = token_number
        super().__init__(f"customer {customer_id} already holds active token {token_number}")


# -------------------- call next --------------------


class CounterBusy(QueueError):
    code = "counter_busy"


class CounterUnavailable(QueueError):
    code = "counter_unavailable"


class NoTokensAvailable(QueueError):
    code = "no_tokens"


class ConcurrencyConflict(QueueError):
    """Lost the reservation race after bounded retries; retry the whole call."""

    code = "concurrency_conflict"


# -------------------- lookups / collaborators --------------------


class NotFound(QueueError):
    code = "not_found"


class UnknownDepartment(NotFound):
    code = "unknown_department"


class UnknownCounter(NotFound):
    code = "unknown_counter"


class UnknownToken(NotFound):
    code = "unknown_token"


class PersistenceError(QueueError):
    code = "persistence_error"
