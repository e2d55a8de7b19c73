from __future__ import annotations

# Domain records shared by every layer.
#
# Tokens are immutable: the state machine and the services build new
# versions with `dataclasses.replace` and hand them to the store in a single
# explicit save step. Departments and counters are long-lived configuration
# read by the core.

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any

from .errors import InvalidPriority


class TokenStatus(str, Enum):
    WAITING = "waiting"
    CALLED = "called"
    IN_SERVICE = "in_service"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    TRANSFERRED = "transferred"


ACTIVE_STATUSES = frozenset({TokenStatus.WAITING, TokenStatus.CALLED, TokenStatus.IN_SERVICE})
TERMINAL_STATUSES = frozenset({TokenStatus.COMPLETED, TokenStatus.CANCELLED, TokenStatus.NO_SHOW})


class QueueType(str, Enum):
    FIFO = "fifo"
    LIFO = "lifo"
    PRIORITY = "priority"
    WEIGHTED = "weighted"
    ROUND_ROBIN = "round_robin"


class CounterStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BUSY = "busy"
    BREAK = "break"
    CLOSED = "closed"


MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
DEFAULT_SERVICE_TYPE = "general"


@dataclass(frozen=True)
class TransferRecord:
    from_department: str
    to_department: str
    from_counter: str | None
    to_counter: str | None
    reason: str
    at: datetime

    def to_message(self) -> dict[str, Any]:
        return {
            "from_department": self.from_department,
            "to_department": self.to_department,
            "from_counter": self.from_counter,
            "to_counter": self.to_counter,
            "reason": self.reason,
            "at": self.at.isoformat(),
        }


@dataclass(frozen=True)
class Token:
    """A customer's place-in-line record for one department visit."""

    token_number: str
    display_number: str
    customer_id: str
    department_id: str
    business_date: date
    issued_at: datetime
    priority: int = DEFAULT_PRIORITY
    service_type: str = DEFAULT_SERVICE_TYPE
    status: TokenStatus = TokenStatus.WAITING
    queue_position: int | None = None
    counter_id: str | None = None
    called_at: datetime | None = None
    service_started_at: datetime | None = None
    completed_at: datetime | None = None
    wait_time_minutes: float | None = None
    service_time_minutes: float | None = None
    served_by: str | None = None
    notes: str | None = None
    rating: int | None = None
    cancel_reason: str | None = None
    transfer_history: tuple[TransferRecord, ...] = ()
    # Bumped by the store on every successful compare-and-set.
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def age_minutes(self, now: datetime) -> float:
        return max(0.0, (now - self.issued_at).total_seconds() / 60.0)

    def to_message(self) -> dict[str, Any]:
        def ts(value: datetime | None) -> str | None:
            return value.isoformat() if value is not None else None

        return {
            "token_number": self.token_number,
            "display_number": self.display_number,
            "customer_id": self.customer_id,
            "department_id": self.department_id,
            "business_date": self.business_date.isoformat(),
            "priority": self.priority,
            "service_type": self.service_type,
            "status": self.status.value,
            "queue_position": self.queue_position,
            "counter_id": self.counter_id,
            "issued_at": ts(self.issued_at),
            "called_at": ts(self.called_at),
            "service_started_at": ts(self.service_started_at),
            "completed_at": ts(self.completed_at),
            "wait_time_minutes": self.wait_time_minutes,
            "service_time_minutes": self.service_time_minutes,
            "served_by": self.served_by,
            "notes": self.notes,
            "rating": self.rating,
            "cancel_reason": self.cancel_reason,
            "transfer_history": [t.to_message() for t in self.transfer_history],
        }


@dataclass(frozen=True)
class OpeningHours:
    opens: time
    closes: time

    def contains(self, moment: time) -> bool:
        return self.opens <= moment <= self.closes


@dataclass
class Department:
    id: str
    code: str
    max_tokens_per_day: int = 500
    queue_type: QueueType = QueueType.FIFO
    # Rolling average fed by the statistics aggregation; None = no history.
    avg_service_minutes: float | None = None
    # weekday (0 = Monday) -> hours. None means open around the clock; a
    # weekday missing from a configured mapping means closed that day.
    operating_hours: dict[int, OpeningHours] | None = None
    active: bool = True

    def is_open(self, at: datetime) -> bool:
        if not self.active:
            return False
        if self.operating_hours is None:
            return True
        hours = self.operating_hours.get(at.weekday())
        return hours is not None and hours.contains(at.time())


@dataclass
class Counter:
    id: str
    department_id: str
    status: CounterStatus = CounterStatus.INACTIVE
    # Empty means the counter serves every service type of its department.
    service_types: frozenset[str] = field(default_factory=frozenset)
    current_token_id: str | None = None

    def accepts(self, service_type: str) -> bool:
        return not self.service_types or service_type in self.service_types

    @property
    def is_available(self) -> bool:
        return self.status == CounterStatus.ACTIVE and self.current_token_id is None

    def to_message(self) -> dict[str, Any]:
        return {
            "counter_id": self.id,
            "department_id": self.department_id,
            "status": self.status.value,
            "service_types": sorted(self.service_types),
            "current_token_id": self.current_token_id,
        }


def validate_priority(priority: object) -> int:
    """Return `priority` as an int in 1..10 or raise `InvalidPriority`."""
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise InvalidPriority(priority)
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise InvalidPriority(priority)
    return priority
