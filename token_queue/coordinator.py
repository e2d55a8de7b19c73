from __future__ import annotations

# Counter Coordinator.
#
# "Call next" is the one operation where several counters race on the same
# department queue. Everything between "picked as next" and "marked called"
# happens while holding the department lock:
#
#   peek -> reserve counter -> compare-and-set token waiting->called
#        -> remove from queue -> persist shifted positions
#
# If the store says the peeked token is no longer waiting (changed by some
# other writer), the stale entry is dropped and we peek again, at most
# `max_attempts` times.

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable

from . import lifecycle
from .errors import (
    ConcurrencyConflict,
    CounterBusy,
    CounterUnavailable,
    NoTokensAvailable,
    PersistenceError,
    QueueError,
    UnknownCounter,
)
from .models import Counter, CounterStatus, Token, TokenStatus
from .ordering import DepartmentQueue, QueueEntry, QueueOrderingEngine
from .store import Directory, TokenStore

logger = logging.getLogger(__name__)

PositionSink = Callable[[dict[str, int]], None]
# Puts a queue back to a snapshot, stored positions included.
Rollback = Callable[[DepartmentQueue, list[QueueEntry]], None]


class CounterCoordinator:
    def __init__(
        self,
        *,
        engine: QueueOrderingEngine,
        store: TokenStore,
        directory: Directory,
        clock: Callable[[], datetime],
        max_attempts: int = 3,
        on_positions: PositionSink | None = None,
        on_rollback: Rollback | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.directory = directory
        self.clock = clock
        self.max_attempts = max_attempts
        self._on_positions = on_positions or (lambda changes: None)
        self._on_rollback = on_rollback or (lambda queue, snapshot: queue.restore(snapshot))

    def _counter(self, counter_id: str) -> Counter:
        counter = self.directory.get_counter(counter_id)
        if counter is None:
            raise UnknownCounter(f"unknown counter {counter_id}")
        return counter

    def request_next(self, counter_id: str) -> Token:
        """Reserve and call the next eligible token for `counter_id`.

        Raises CounterBusy, CounterUnavailable, NoTokensAvailable or
        ConcurrencyConflict; on any of them nothing has changed.
        """
        counter = self._counter(counter_id)
        if counter.current_token_id is not None:
            raise CounterBusy(f"counter {counter_id} is serving {counter.current_token_id}")
        if counter.status != CounterStatus.ACTIVE:
            raise CounterUnavailable(f"counter {counter_id} is {counter.status.value}")

        queue = self.engine.queue(counter.department_id)
        for attempt in range(1, self.max_attempts + 1):
            with queue.lock:
                # Re-read under the lock: a concurrent request for the same
                # counter may have won while we were waiting.
                counter = self._counter(counter_id)
                if counter.current_token_id is not None:
                    raise CounterBusy(f"counter {counter_id} is serving {counter.current_token_id}")
                if counter.status != CounterStatus.ACTIVE:
                    raise CounterUnavailable(f"counter {counter_id} is {counter.status.value}")

                entry = queue.peek_next(counter.accepts)
                if entry is None:
                    raise NoTokensAvailable(f"no waiting tokens for counter {counter_id}")

                if not self.directory.reserve_counter(counter_id, entry.token_number):
                    raise CounterBusy(f"counter {counter_id} was reserved concurrently")

                snapshot = queue.snapshot()
                now = self.clock()
                department_id = counter.department_id

                def mark_called(t: Token) -> Token:
                    if t.department_id != department_id:
                        raise _StaleEntry(t.token_number)
                    return lifecycle.call(t, counter_id, now)

                try:
                    called = self.store.atomic_status_transition(
                        entry.token_number, TokenStatus.WAITING, TokenStatus.CALLED, mark_called
                    )
                except (_StaleEntry, QueueError):
                    called = None
                except Exception as exc:
                    self.directory.release_counter(counter_id, entry.token_number)
                    raise PersistenceError(f"could not call {entry.token_number}: {exc}") from exc

                if called is None:
                    # The queue held an entry the store no longer considers
                    # waiting here. Drop it and try the next one.
                    self.directory.release_counter(counter_id, entry.token_number)
                    logger.warning(
                        "dropping stale queue entry %s in %s (attempt %d/%d)",
                        entry.token_number,
                        counter.department_id,
                        attempt,
                        self.max_attempts,
                    )
                    self._on_positions(queue.remove(entry.token_number))
                    continue

                try:
                    self._on_positions(queue.remove(entry.token_number))
                except Exception as exc:
                    self._on_rollback(queue, snapshot)
                    self.store.save_token(_uncall(called, queue.position_of(entry.token_number)))
                    self.directory.release_counter(counter_id, entry.token_number)
                    raise PersistenceError(f"could not compact queue after calling {entry.token_number}: {exc}") from exc

                logger.info("counter %s called %s", counter_id, called.display_number)
                return called

        raise ConcurrencyConflict(
            f"counter {counter_id} lost {self.max_attempts} reservation attempts in {counter.department_id}"
        )


class _StaleEntry(Exception):
    pass


def _uncall(called: Token, position: int | None) -> Token:
    return replace(called, status=TokenStatus.WAITING, counter_id=None, called_at=None, queue_position=position)
