from __future__ import annotations

# External collaborators of the core, as small synchronous interfaces:
#
# - TokenStore: durable token records with compare-and-set on status
# - Directory: department / counter configuration (+ counter reservation)
# - StatisticsSink: completed-service figures and the rolling average
# - Notifier: customer-facing notifications (SMS/email/display)
#
# The in-memory implementations below back the MQTT service and the tests.
# A database-backed deployment implements the same methods.

import logging
import threading
from collections import defaultdict, deque
from dataclasses import replace
from datetime import date, time
from typing import Any, Callable, Protocol

from .errors import UnknownCounter, UnknownToken
from .models import (
    Counter,
    CounterStatus,
    Department,
    OpeningHours,
    QueueType,
    Token,
    TokenStatus,
)

logger = logging.getLogger(__name__)

TokenMutator = Callable[[Token], Token]


class TokenStore(Protocol):
    def get_token(self, token_number: str) -> Token | None: ...

    def save_token(self, token: Token) -> Token: ...

    def load_waiting_tokens(self, department_id: str) -> list[Token]: ...

    def tokens_for_department(self, department_id: str, business_date: date) -> list[Token]: ...

    def tokens_for_customer(self, customer_id: str, business_date: date | None = None) -> list[Token]: ...

    def token_numbers_with_prefix(self, prefix: str) -> list[str]: ...

    def atomic_status_transition(
        self,
        token_number: str,
        expected_status: TokenStatus,
        new_status: TokenStatus,
        mutator: TokenMutator,
    ) -> Token | None: ...


class Directory(Protocol):
    def get_department(self, department_id: str) -> Department | None: ...

    def get_counter(self, counter_id: str) -> Counter | None: ...

    def counters_for_department(self, department_id: str) -> list[Counter]: ...

    def reserve_counter(self, counter_id: str, token_number: str) -> bool: ...

    def release_counter(self, counter_id: str, token_number: str) -> None: ...

    def set_counter_status(self, counter_id: str, status: CounterStatus) -> Counter: ...


class StatisticsSink(Protocol):
    def record_completion(self, department_id: str, wait_minutes: float, service_minutes: float) -> None: ...

    def average_service_minutes(self, department_id: str) -> float | None: ...


class Notifier(Protocol):
    def notify(self, event: str, token: Token) -> None: ...


# -------------------- in-memory implementations --------------------


class InMemoryTokenStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, Token] = {}

    def get_token(self, token_number: str) -> Token | None:
        with self._lock:
            return self._tokens.get(token_number)

    def save_token(self, token: Token) -> Token:
        with self._lock:
            current = self._tokens.get(token.token_number)
            version = current.version + 1 if current is not None else 0
            stored = replace(token, version=version)
            self._tokens[token.token_number] = stored
            return stored

    def load_waiting_tokens(self, department_id: str) -> list[Token]:
        with self._lock:
            return [
                t
                for t in self._tokens.values()
                if t.department_id == department_id and t.status == TokenStatus.WAITING
            ]

    def tokens_for_department(self, department_id: str, business_date: date) -> list[Token]:
        with self._lock:
            return [
                t
                for t in self._tokens.values()
                if t.department_id == department_id and t.business_date == business_date
            ]

    def tokens_for_customer(self, customer_id: str, business_date: date | None = None) -> list[Token]:
        with self._lock:
            found = [
                t
                for t in self._tokens.values()
                if t.customer_id == customer_id and (business_date is None or t.business_date == business_date)
            ]
        return sorted(found, key=lambda t: t.issued_at)

    def token_numbers_with_prefix(self, prefix: str) -> list[str]:
        with self._lock:
            return [n for n in self._tokens if n.startswith(prefix)]

    def atomic_status_transition(
        self,
        token_number: str,
        expected_status: TokenStatus,
        new_status: TokenStatus,
        mutator: TokenMutator,
    ) -> Token | None:
        """Apply `mutator` only if the token is still in `expected_status`.

        Returns the stored new version, or None when the status moved on.
        The mutator may raise; nothing is written in that case.
        """
        with self._lock:
            current = self._tokens.get(token_number)
            if current is None:
                raise UnknownToken(f"unknown token {token_number}")
            if current.status != expected_status:
                return None
            updated = mutator(current)
            if updated.status != new_status:
                raise ValueError(f"mutator produced {updated.status.value}, expected {new_status.value}")
            stored = replace(updated, version=current.version + 1)
            self._tokens[token_number] = stored
            return stored


_WEEKDAYS = {"mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6}


class InMemoryDirectory:
    def __init__(self, departments: list[Department] | None = None, counters: list[Counter] | None = None) -> None:
        self._lock = threading.Lock()
        self._departments: dict[str, Department] = {d.id: d for d in departments or []}
        self._counters: dict[str, Counter] = {c.id: c for c in counters or []}

    def add_department(self, department: Department) -> None:
        with self._lock:
            self._departments[department.id] = department

    def add_counter(self, counter: Counter) -> None:
        with self._lock:
            self._counters[counter.id] = counter

    def get_department(self, department_id: str) -> Department | None:
        with self._lock:
            d = self._departments.get(department_id)
            return replace(d) if d is not None else None

    def departments(self) -> list[Department]:
        with self._lock:
            return [replace(d) for d in self._departments.values()]

    def get_counter(self, counter_id: str) -> Counter | None:
        with self._lock:
            c = self._counters.get(counter_id)
            return replace(c) if c is not None else None

    def counters_for_department(self, department_id: str) -> list[Counter]:
        with self._lock:
            return [replace(c) for c in self._counters.values() if c.department_id == department_id]

    def reserve_counter(self, counter_id: str, token_number: str) -> bool:
        """Compare-and-set: claim an idle counter for `token_number`."""
        with self._lock:
            c = self._counters.get(counter_id)
            if c is None:
                raise UnknownCounter(f"unknown counter {counter_id}")
            if c.current_token_id is not None:
                return False
            self._counters[counter_id] = replace(c, current_token_id=token_number, status=CounterStatus.BUSY)
            return True

    def release_counter(self, counter_id: str, token_number: str) -> None:
        with self._lock:
            c = self._counters.get(counter_id)
            if c is None or c.current_token_id != token_number:
                return
            status = CounterStatus.ACTIVE if c.status == CounterStatus.BUSY else c.status
            self._counters[counter_id] = replace(c, current_token_id=None, status=status)

    def set_counter_status(self, counter_id: str, status: CounterStatus) -> Counter:
        with self._lock:
            c = self._counters.get(counter_id)
            if c is None:
                raise UnknownCounter(f"unknown counter {counter_id}")
            c = replace(c, status=status)
            self._counters[counter_id] = c
            return replace(c)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InMemoryDirectory:
        """Build from a JSON-style mapping.

        Example::

            {"departments": [{"id": "cs", "code": "CS", "queue_type": "priority",
                              "max_tokens_per_day": 300,
                              "operating_hours": {"mon": ["09:00", "17:00"]}}],
             "counters": [{"id": "cs-1", "department_id": "cs",
                           "status": "active", "service_types": ["general"]}]}
        """
        departments = []
        for d in data.get("departments", []):
            hours = None
            if d.get("operating_hours") is not None:
                hours = {
                    _WEEKDAYS[day.lower()[:3]]: OpeningHours(time.fromisoformat(o), time.fromisoformat(c))
                    for day, (o, c) in d["operating_hours"].items()
                }
            departments.append(
                Department(
                    id=str(d["id"]),
                    code=str(d.get("code", d["id"])).upper(),
                    max_tokens_per_day=int(d.get("max_tokens_per_day", 500)),
                    queue_type=QueueType(d.get("queue_type", "fifo")),
                    avg_service_minutes=d.get("avg_service_minutes"),
                    operating_hours=hours,
                    active=bool(d.get("active", True)),
                )
            )
        counters = [
            Counter(
                id=str(c["id"]),
                department_id=str(c["department_id"]),
                status=CounterStatus(c.get("status", "inactive")),
                service_types=frozenset(c.get("service_types", [])),
            )
            for c in data.get("counters", [])
        ]
        return cls(departments, counters)

    @classmethod
    def demo(cls, *, counters_per_department: int = 2) -> InMemoryDirectory:
        """Two always-open departments used by the local runner."""
        departments = [
            Department(id="CS", code="CS", queue_type=QueueType.PRIORITY, max_tokens_per_day=999),
            Department(id="AC", code="AC", queue_type=QueueType.FIFO, max_tokens_per_day=999),
        ]
        counters = [
            Counter(id=f"{d.id}-{i}", department_id=d.id)
            for d in departments
            for i in range(1, counters_per_department + 1)
        ]
        return cls(departments, counters)


class RollingStatistics:
    """Keeps the last `window` completions per department."""

    def __init__(self, window: int = 20) -> None:
        self._lock = threading.Lock()
        self._service: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=window))
        self._wait: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=window))
        self.completed: dict[str, int] = defaultdict(int)

    def record_completion(self, department_id: str, wait_minutes: float, service_minutes: float) -> None:
        with self._lock:
            self._service[department_id].append(float(service_minutes))
            self._wait[department_id].append(float(wait_minutes))
            self.completed[department_id] += 1

    def average_service_minutes(self, department_id: str) -> float | None:
        with self._lock:
            samples = self._service.get(department_id)
            if not samples:
                return None
            return sum(samples) / len(samples)

    def average_wait_minutes(self, department_id: str) -> float | None:
        with self._lock:
            samples = self._wait.get(department_id)
            if not samples:
                return None
            return sum(samples) / len(samples)


class LoggingNotifier:
    """Stand-in for SMS/email delivery: writes one log line per event."""

    def notify(self, event: str, token: Token) -> None:
        logger.info(
            "notify %s: token %s (customer %s, department %s, position %s)",
            event,
            token.display_number,
            token.customer_id,
            token.department_id,
            token.queue_position,
        )
