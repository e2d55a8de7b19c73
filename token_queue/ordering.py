from __future__ import annotations

# Queue Ordering Engine.
#
# Each department owns one `DepartmentQueue`: a plain list of waiting entries
# where index i holds queue position i + 1. Because positions are derived
# from list indices they are contiguous (1..N) by construction; every
# mutation reports the positions that changed so the caller can persist them
# in one explicit step.
#
# Locking: every DepartmentQueue carries a re-entrant lock. The queue's own
# methods take it, and callers that need a larger atomic unit (peek + reserve
# + remove + status change) hold it around the whole unit via
# `QueueOrderingEngine.locked(...)`.

import logging
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Iterator, Sequence

from .errors import InvalidReorder
from .models import QueueType, Token, TokenStatus

logger = logging.getLogger(__name__)

# (priority, age_minutes) -> effective priority.
WeightingFn = Callable[[int, float], float]
# service_type -> may this counter serve it?
Eligibility = Callable[[str], bool]
TokenLoader = Callable[[str], Iterable[Token]]


def linear_aging(rate_per_minute: float = 0.1) -> WeightingFn:
    """Effective priority = priority + rate * minutes waited."""

    def weigh(priority: int, age_minutes: float) -> float:
        return priority + rate_per_minute * age_minutes

    return weigh


@dataclass(frozen=True)
class QueueEntry:
    """The slice of a token the ordering rules look at."""

    token_number: str
    customer_id: str
    priority: int
    service_type: str
    issued_at: datetime

    @classmethod
    def from_token(cls, token: Token) -> QueueEntry:
        return cls(
            token_number=token.token_number,
            customer_id=token.customer_id,
            priority=token.priority,
            service_type=token.service_type,
            issued_at=token.issued_at,
        )


class DepartmentQueue:
    """Waiting set of one department, in service order."""

    def __init__(self, department_id: str, weighting: WeightingFn) -> None:
        self.department_id = department_id
        self.lock = threading.RLock()
        self._weighting = weighting
        self._entries: list[QueueEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, token_number: object) -> bool:
        return any(e.token_number == token_number for e in self._entries)

    # -------------------- reads --------------------

    def entries(self) -> list[QueueEntry]:
        with self.lock:
            return list(self._entries)

    def positions(self) -> dict[str, int]:
        with self.lock:
            return {e.token_number: i + 1 for i, e in enumerate(self._entries)}

    def position_of(self, token_number: str) -> int | None:
        with self.lock:
            for i, e in enumerate(self._entries):
                if e.token_number == token_number:
                    return i + 1
            return None

    def insertion_index(self, entry: QueueEntry, queue_type: QueueType, now: datetime) -> int:
        """0-based index `entry` would take if enqueued now under `queue_type`."""
        with self.lock:
            if queue_type == QueueType.FIFO:
                return len(self._entries)
            if queue_type == QueueType.LIFO:
                return 0
            if queue_type == QueueType.ROUND_ROBIN:
                return self._round_robin_index(entry)
            return self._ranked_index(entry, queue_type, now)

    def _effective(self, entry: QueueEntry, queue_type: QueueType, now: datetime) -> float:
        if queue_type == QueueType.WEIGHTED:
            age = max(0.0, (now - entry.issued_at).total_seconds() / 60.0)
            return self._weighting(entry.priority, age)
        return float(entry.priority)

    def _ranked_index(self, entry: QueueEntry, queue_type: QueueType, now: datetime) -> int:
        # position = (waiting tokens with strictly higher effective priority) + 1,
        # so a newcomer goes ahead of tokens at its own level.
        new = self._effective(entry, queue_type, now)
        return sum(1 for e in self._entries if self._effective(e, queue_type, now) > new)

    def _round_robin_index(self, entry: QueueEntry) -> int:
        # An entry's round is how many same-type entries precede it. The
        # newcomer joins the round equal to the number of its type already
        # waiting, at the end of that round.
        seen: dict[str, int] = {}
        new_round = sum(1 for e in self._entries if e.service_type == entry.service_type)
        for i, e in enumerate(self._entries):
            r = seen.get(e.service_type, 0)
            seen[e.service_type] = r + 1
            if r > new_round:
                return i
        return len(self._entries)

    def peek_next(self, eligible: Eligibility | None = None) -> QueueEntry | None:
        """First entry in position order the counter may serve; no mutation."""
        with self.lock:
            for e in self._entries:
                if eligible is None or eligible(e.service_type):
                    return e
            return None

    # -------------------- mutations --------------------

    def enqueue(self, entry: QueueEntry, queue_type: QueueType, now: datetime) -> dict[str, int]:
        with self.lock:
            if entry.token_number in self:
                raise ValueError(f"token {entry.token_number} is already waiting")
            index = self.insertion_index(entry, queue_type, now)
            self._entries.insert(index, entry)
            return self._positions_from(index)

    def remove(self, token_number: str) -> dict[str, int]:
        """Drop a token; everything behind it moves up one place."""
        with self.lock:
            for i, e in enumerate(self._entries):
                if e.token_number == token_number:
                    del self._entries[i]
                    return self._positions_from(i)
            raise KeyError(token_number)

    def reorder(self, order: Sequence[str]) -> dict[str, int]:
        with self.lock:
            current = {e.token_number: e for e in self._entries}
            if len(order) != len(current) or set(order) != set(current):
                raise InvalidReorder(
                    f"order must list exactly the {len(current)} waiting tokens of {self.department_id}"
                )
            before = self.positions()
            self._entries = [current[n] for n in order]
            after = self.positions()
            return {n: p for n, p in after.items() if before.get(n) != p}

    def snapshot(self) -> list[QueueEntry]:
        with self.lock:
            return list(self._entries)

    def restore(self, entries: list[QueueEntry]) -> None:
        with self.lock:
            self._entries = list(entries)

    def _positions_from(self, index: int) -> dict[str, int]:
        return {e.token_number: i + 1 for i, e in enumerate(self._entries[index:], start=index)}


class QueueOrderingEngine:
    """Registry of department queues plus the public ordering operations."""

    def __init__(self, *, weighting: WeightingFn | None = None, loader: TokenLoader | None = None) -> None:
        self.weighting = weighting or linear_aging()
        self._loader = loader
        self._registry_lock = threading.Lock()
        self._queues: dict[str, DepartmentQueue] = {}

    def queue(self, department_id: str) -> DepartmentQueue:
        """Return the department's queue, hydrating it from the loader once."""
        with self._registry_lock:
            q = self._queues.get(department_id)
            if q is None:
                q = DepartmentQueue(department_id, self.weighting)
                if self._loader is not None:
                    q.restore(self._hydrate(department_id))
                self._queues[department_id] = q
            return q

    def _hydrate(self, department_id: str) -> list[QueueEntry]:
        waiting = [t for t in self._loader(department_id) if t.status == TokenStatus.WAITING]
        waiting.sort(
            key=lambda t: (
                t.queue_position if t.queue_position is not None else float("inf"),
                t.issued_at,
                t.token_number,
            )
        )
        if waiting:
            logger.info("hydrated %d waiting tokens for department %s", len(waiting), department_id)
        return [QueueEntry.from_token(t) for t in waiting]

    @contextmanager
    def locked(self, *department_ids: str) -> Iterator[None]:
        """Hold the locks of several departments, always in sorted order."""
        with ExitStack() as stack:
            for department_id in sorted(set(department_ids)):
                stack.enter_context(self.queue(department_id).lock)
            yield

    # -------------------- operations --------------------

    def enqueue(self, token: Token, queue_type: QueueType, now: datetime) -> dict[str, int]:
        return self.queue(token.department_id).enqueue(QueueEntry.from_token(token), queue_type, now)

    def dequeue_next(self, department_id: str, eligible: Eligibility | None = None) -> QueueEntry | None:
        return self.queue(department_id).peek_next(eligible)

    def remove(self, token: Token) -> dict[str, int]:
        return self.queue(token.department_id).remove(token.token_number)

    def reorder(self, department_id: str, explicit_order: Sequence[str]) -> dict[str, int]:
        return self.queue(department_id).reorder(explicit_order)

    def position_of(self, token: Token) -> int | None:
        return self.queue(token.department_id).position_of(token.token_number)
