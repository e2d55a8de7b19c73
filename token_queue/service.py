from __future__ import annotations

# TokenService: the operations request handlers call.
#
# It wires the Sequence Generator, Queue Ordering Engine, state machine,
# Counter Coordinator and Wait-Time Estimator to the external collaborators
# (store, directory, statistics, notifier). Every operation that touches a
# department's waiting set runs under that department's lock and is
# all-or-nothing: if persisting fails, the in-memory queue is restored and
# the error surfaces as PersistenceError.
#
# Queue positions: the ordering engine is authoritative. `Token.queue_position`
# in the store is a projection refreshed after each queue mutation.

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterator, Sequence

from . import lifecycle
from .config import EngineConfig
from .coordinator import CounterCoordinator
from .errors import (
    CounterBusy,
    DepartmentClosed,
    DuplicateActiveToken,
    InvalidTransition,
    NoTokensAvailable,
    PersistenceError,
    QueueError,
    UnknownCounter,
    UnknownDepartment,
    UnknownToken,
)
from .estimator import WaitTimeEstimator
from .models import (
    DEFAULT_PRIORITY,
    DEFAULT_SERVICE_TYPE,
    Counter,
    CounterStatus,
    Department,
    Token,
    TokenStatus,
    validate_priority,
)
from .ordering import DepartmentQueue, QueueEntry, QueueOrderingEngine, WeightingFn, linear_aging
from .sequence import SequenceGenerator
from .store import (
    Directory,
    InMemoryDirectory,
    InMemoryTokenStore,
    LoggingNotifier,
    Notifier,
    RollingStatistics,
    StatisticsSink,
    TokenStore,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class TokenService:
    def __init__(
        self,
        *,
        store: TokenStore | None = None,
        directory: Directory | None = None,
        statistics: StatisticsSink | None = None,
        notifier: Notifier | None = None,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        weighting: WeightingFn | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store if store is not None else InMemoryTokenStore()
        self.directory = directory if directory is not None else InMemoryDirectory()
        self.statistics = statistics if statistics is not None else RollingStatistics(self.config.rolling_window)
        self.notifier = notifier if notifier is not None else LoggingNotifier()
        self.clock = clock or datetime.now

        self.engine = QueueOrderingEngine(
            weighting=weighting or linear_aging(self.config.aging_per_minute),
            loader=self.store.load_waiting_tokens,
        )
        self.sequence = SequenceGenerator(loader=self.store.token_numbers_with_prefix)
        self.estimator = WaitTimeEstimator(self.statistics, self.config.default_service_minutes)
        self.coordinator = CounterCoordinator(
            engine=self.engine,
            store=self.store,
            directory=self.directory,
            clock=self.clock,
            max_attempts=self.config.max_call_attempts,
            on_positions=self._persist_positions,
            on_rollback=self._rollback,
        )

        self._customer_locks_guard = threading.Lock()
        # customer_id -> (lock, holders + waiters); dropped when unused.
        self._customer_locks: dict[str, tuple[threading.Lock, int]] = {}
        self._near_turn_sent: set[str] = set()

    # -------------------- lookups --------------------

    def _department(self, department_id: str) -> Department:
        department = self.directory.get_department(department_id)
        if department is None:
            raise UnknownDepartment(f"unknown department {department_id}")
        return department

    def _counter(self, counter_id: str) -> Counter:
        counter = self.directory.get_counter(counter_id)
        if counter is None:
            raise UnknownCounter(f"unknown counter {counter_id}")
        return counter

    def get_token(self, token_number: str) -> Token:
        token = self.store.get_token(token_number)
        if token is None:
            raise UnknownToken(f"unknown token {token_number}")
        return token

    def customer_tokens(self, customer_id: str, business_date: date | None = None) -> list[Token]:
        return self.store.tokens_for_customer(customer_id, business_date)

    def current_token(self, counter_id: str) -> Token | None:
        counter = self._counter(counter_id)
        if counter.current_token_id is None:
            return None
        return self.store.get_token(counter.current_token_id)

    @contextmanager
    def _customer_lock(self, customer_id: str) -> Iterator[None]:
        with self._customer_locks_guard:
            lock, users = self._customer_locks.get(customer_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._customer_locks[customer_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._customer_locks_guard:
                lock, users = self._customer_locks[customer_id]
                if users == 1:
                    del self._customer_locks[customer_id]
                else:
                    self._customer_locks[customer_id] = (lock, users - 1)

    # -------------------- side effects --------------------

    def _notify(self, event: str, token: Token) -> None:
        # Delivery is an external concern; a failing channel must not undo
        # a committed queue operation.
        try:
            self.notifier.notify(event, token)
        except Exception:
            logger.exception("notification %s for %s failed", event, token.token_number)

    def _persist_positions(self, changes: dict[str, int]) -> None:
        """Write moved positions to the store and send near-turn notices."""
        for token_number, position in sorted(changes.items(), key=lambda kv: kv[1]):
            token = self.store.get_token(token_number)
            if token is None or token.status != TokenStatus.WAITING:
                continue
            if token.queue_position != position:
                token = self.store.save_token(replace(token, queue_position=position))
            if position <= self.config.near_turn_threshold and token_number not in self._near_turn_sent:
                self._near_turn_sent.add(token_number)
                self._notify("near_turn", token)

    def _rollback(self, queue: DepartmentQueue, snapshot: list[QueueEntry]) -> None:
        """Put `queue` back to `snapshot` and rewrite stored positions to match.

        Positions written before a failure would otherwise leave gaps or
        duplicates in the store.
        """
        queue.restore(snapshot)
        for position, entry in enumerate(snapshot, start=1):
            token = self.store.get_token(entry.token_number)
            if token is None or token.status != TokenStatus.WAITING or token.queue_position == position:
                continue
            try:
                self.store.save_token(replace(token, queue_position=position))
            except Exception:
                logger.exception("could not restore position %d of %s", position, entry.token_number)

    # -------------------- issuance --------------------

    def issue_token(
        self,
        customer_id: str,
        department_id: str,
        priority: int = DEFAULT_PRIORITY,
        service_type: str = DEFAULT_SERVICE_TYPE,
        business_date: date | None = None,
    ) -> Token:
        """Create a waiting token and place it in the department's queue."""
        priority = validate_priority(priority)
        department = self._department(department_id)
        now = self.clock()
        if not department.is_open(now):
            raise DepartmentClosed(f"department {department_id} is closed")
        business_date = business_date or now.date()

        with self._customer_lock(customer_id):
            for existing in self.store.tokens_for_customer(customer_id, business_date):
                if existing.is_active:
                    raise DuplicateActiveToken(customer_id, existing.token_number)

            queue = self.engine.queue(department_id)
            with queue.lock:
                token_number, display_number = self.sequence.next_number(department, business_date)
                token = Token(
                    token_number=token_number,
                    display_number=display_number,
                    customer_id=customer_id,
                    department_id=department_id,
                    business_date=business_date,
                    issued_at=now,
                    priority=priority,
                    service_type=service_type,
                )
                snapshot = queue.snapshot()
                changes = queue.enqueue(QueueEntry.from_token(token), department.queue_type, now)
                saved = False
                try:
                    token = self.store.save_token(replace(token, queue_position=changes[token_number]))
                    saved = True
                    self._notify("issued", token)
                    self._persist_positions(changes)
                except Exception as exc:
                    self._rollback(queue, snapshot)
                    if saved:
                        # The number is spent; void the record so the customer
                        # holds no active token.
                        self.store.save_token(
                            replace(token, status=TokenStatus.CANCELLED, queue_position=None, cancel_reason="issue failed")
                        )
                    else:
                        self.sequence.release(department, business_date, token_number)
                    raise PersistenceError(f"could not issue token in {department_id}: {exc}") from exc

        logger.info(
            "issued %s to customer %s (priority %d, position %d)",
            token.display_number,
            customer_id,
            priority,
            token.queue_position,
        )
        return self.store.get_token(token_number) or token

    # -------------------- counter actions --------------------

    def call_next(self, counter_id: str) -> Token | None:
        """Call the next eligible token to `counter_id`; None when the queue is empty."""
        try:
            token = self.coordinator.request_next(counter_id)
        except NoTokensAvailable:
            return None
        self._notify("called", token)
        return token

    def start_service(self, token_number: str, staff_id: str | None = None) -> Token:
        now = self.clock()
        token = self._transition(
            token_number,
            "start_service",
            TokenStatus.IN_SERVICE,
            lambda t: lifecycle.start_service(t, staff_id, now),
        )
        logger.info("service started for %s (waited %.1f min)", token.display_number, token.wait_time_minutes or 0.0)
        return token

    def complete_service(self, token_number: str, notes: str | None = None, rating: int | None = None) -> Token:
        now = self.clock()
        token = self._transition(
            token_number,
            "complete",
            TokenStatus.COMPLETED,
            lambda t: lifecycle.complete(t, now, notes, rating),
        )
        if token.counter_id is not None:
            self.directory.release_counter(token.counter_id, token.token_number)
        try:
            self.statistics.record_completion(
                token.department_id, token.wait_time_minutes or 0.0, token.service_time_minutes or 0.0
            )
        except Exception:
            logger.exception("statistics update for %s failed", token.token_number)
        self._near_turn_sent.discard(token_number)
        self._notify("completed", token)
        logger.info("completed %s in %.1f min", token.display_number, token.service_time_minutes or 0.0)
        return token

    def _transition(
        self,
        token_number: str,
        action: str,
        new_status: TokenStatus,
        mutator: Callable[[Token], Token],
    ) -> Token:
        """Status change for tokens that are not in the waiting set."""
        current = self.get_token(token_number)
        if not lifecycle.can(current, action):
            raise InvalidTransition(current.status.value, action)
        updated = self.store.atomic_status_transition(token_number, current.status, new_status, mutator)
        if updated is None:
            raise InvalidTransition(self.get_token(token_number).status.value, action, "status changed concurrently")
        return updated

    def _leave(
        self,
        token_number: str,
        action: str,
        new_status: TokenStatus,
        mutator: Callable[[Token], Token],
    ) -> Token:
        """Terminal exit (cancel / no-show) from waiting or called."""
        department_id = self.get_token(token_number).department_id
        queue = self.engine.queue(department_id)
        with queue.lock:
            current = self.get_token(token_number)
            if current.department_id != department_id:
                raise InvalidTransition(current.status.value, action, "token moved concurrently")
            if not lifecycle.can(current, action):
                raise InvalidTransition(current.status.value, action)

            snapshot = queue.snapshot()
            updated = self.store.atomic_status_transition(token_number, current.status, new_status, mutator)
            if updated is None:
                raise InvalidTransition(self.get_token(token_number).status.value, action, "status changed concurrently")

            if token_number in queue:
                try:
                    self._persist_positions(queue.remove(token_number))
                except Exception as exc:
                    self._rollback(queue, snapshot)
                    self.store.save_token(current)
                    raise PersistenceError(f"could not {action} {token_number}: {exc}") from exc
            if current.counter_id is not None:
                self.directory.release_counter(current.counter_id, token_number)

        self._near_turn_sent.discard(token_number)
        return updated

    def cancel_token(self, token_number: str, reason: str | None = None) -> Token:
        token = self._leave(token_number, "cancel", TokenStatus.CANCELLED, lambda t: lifecycle.cancel(t, reason))
        self._notify("cancelled", token)
        logger.info("cancelled %s (%s)", token.display_number, reason or "no reason given")
        return token

    def mark_no_show(self, token_number: str) -> Token:
        now = self.clock()
        grace = timedelta(minutes=self.config.no_show_grace_minutes)
        token = self._leave(
            token_number,
            "mark_no_show",
            TokenStatus.NO_SHOW,
            lambda t: lifecycle.mark_no_show(t, grace, now),
        )
        self._notify("no_show", token)
        logger.info("no-show %s", token.display_number)
        return token

    def expire_no_shows(self, department_id: str, business_date: date | None = None) -> list[Token]:
        """Mark every called token whose grace period elapsed as no-show.

        Meant for an external scheduler; the core has no timers of its own.
        """
        now = self.clock()
        grace = timedelta(minutes=self.config.no_show_grace_minutes)
        expired: list[Token] = []
        for token in self.store.tokens_for_department(department_id, business_date or now.date()):
            if token.status != TokenStatus.CALLED or not lifecycle.no_show_due(token, grace, now):
                continue
            try:
                expired.append(self.mark_no_show(token.token_number))
            except InvalidTransition:
                # Served or cancelled in the meantime.
                logger.debug("skip no-show for %s, status moved on", token.token_number)
        return expired

    def transfer_token(
        self,
        token_number: str,
        new_department_id: str,
        new_counter_id: str | None = None,
        reason: str = "",
    ) -> Token:
        """Move a live token into another department's queue, placed by that department's ordering."""
        token = self.get_token(token_number)
        if not lifecycle.can(token, "transfer"):
            raise InvalidTransition(token.status.value, "transfer")
        destination = self._department(new_department_id)
        if new_counter_id is not None and self._counter(new_counter_id).department_id != new_department_id:
            raise UnknownCounter(f"counter {new_counter_id} does not belong to {new_department_id}")

        origin_id = token.department_id
        with self.engine.locked(origin_id, new_department_id):
            current = self.get_token(token_number)
            if current.department_id != origin_id:
                raise InvalidTransition(current.status.value, "transfer", "token moved concurrently")
            if not lifecycle.can(current, "transfer"):
                raise InvalidTransition(current.status.value, "transfer")

            origin = self.engine.queue(origin_id)
            target = self.engine.queue(new_department_id)
            origin_snapshot = origin.snapshot()
            target_snapshot = target.snapshot()
            now = self.clock()
            moved = lifecycle.transfer(current, new_department_id, new_counter_id, reason, now)

            committed = False
            try:
                changes: dict[str, int] = {}
                if token_number in origin:
                    changes.update(origin.remove(token_number))
                changes.update(target.enqueue(QueueEntry.from_token(moved), destination.queue_type, now))
                moved = replace(moved, queue_position=changes[token_number])
                updated = self.store.atomic_status_transition(
                    token_number, current.status, TokenStatus.WAITING, lambda t: moved
                )
                if updated is None:
                    raise InvalidTransition(
                        self.get_token(token_number).status.value, "transfer", "status changed concurrently"
                    )
                committed = True
                self._near_turn_sent.discard(token_number)
                self._persist_positions(changes)
            except Exception as exc:
                self._rollback(origin, origin_snapshot)
                self._rollback(target, target_snapshot)
                if committed:
                    self.store.save_token(current)
                if isinstance(exc, QueueError):
                    raise
                raise PersistenceError(f"could not transfer {token_number}: {exc}") from exc

            if current.counter_id is not None:
                self.directory.release_counter(current.counter_id, token_number)

        self._notify("transferred", updated)
        logger.info(
            "transferred %s from %s to %s (position %d): %s",
            updated.display_number,
            origin_id,
            new_department_id,
            changes[token_number],
            reason,
        )
        return self.get_token(token_number)

    # -------------------- administration --------------------

    def reorder_queue(self, department_id: str, explicit_order: Sequence[str]) -> dict[str, int]:
        """Replace the waiting order; returns the full new position map."""
        self._department(department_id)
        queue = self.engine.queue(department_id)
        with queue.lock:
            snapshot = queue.snapshot()
            changes = queue.reorder(list(explicit_order))
            try:
                self._persist_positions(changes)
            except Exception as exc:
                self._rollback(queue, snapshot)
                raise PersistenceError(f"could not reorder {department_id}: {exc}") from exc
            logger.info("reordered %s (%d tokens moved)", department_id, len(changes))
            return queue.positions()

    def set_counter_status(self, counter_id: str, status: CounterStatus | str) -> Counter:
        status = CounterStatus(status)
        if status == CounterStatus.BUSY:
            raise ValueError("busy is set by calling a token, not directly")
        counter = self._counter(counter_id)
        with self.engine.queue(counter.department_id).lock:
            counter = self._counter(counter_id)
            if counter.current_token_id is not None:
                raise CounterBusy(f"counter {counter_id} is serving {counter.current_token_id}")
            counter = self.directory.set_counter_status(counter_id, status)
        logger.info("counter %s is now %s", counter_id, status.value)
        return counter

    # -------------------- estimates / status --------------------

    def estimate_wait(
        self,
        department_id: str,
        priority: int = DEFAULT_PRIORITY,
        service_type: str = DEFAULT_SERVICE_TYPE,
    ) -> float:
        """Minutes a token issued now would probably wait (advisory)."""
        priority = validate_priority(priority)
        department = self._department(department_id)
        return self.estimator.estimate(department, self.engine.queue(department_id), priority, self.clock(), service_type)

    def estimate_for_token(self, token_number: str) -> float | None:
        token = self.get_token(token_number)
        position = self.engine.position_of(token)
        if position is None:
            return None
        return self.estimator.estimate_for_position(self._department(token.department_id), position)

    def queue_status(self, department_id: str, business_date: date | None = None) -> dict[str, Any]:
        department = self._department(department_id)
        business_date = business_date or self.clock().date()
        tokens = self.store.tokens_for_department(department_id, business_date)

        counts = {s.value: 0 for s in TokenStatus if s != TokenStatus.TRANSFERRED}
        waits: list[float] = []
        services: list[float] = []
        for t in tokens:
            counts[t.status.value] = counts.get(t.status.value, 0) + 1
            if t.status == TokenStatus.COMPLETED:
                waits.append(t.wait_time_minutes or 0.0)
                services.append(t.service_time_minutes or 0.0)

        queue = self.engine.queue(department_id)
        average = self.estimator.average_service_minutes(department)
        waiting = [
            {
                "token_number": e.token_number,
                "position": i + 1,
                "priority": e.priority,
                "service_type": e.service_type,
                "estimated_wait_minutes": round(i * average, 1),
            }
            for i, e in enumerate(queue.entries())
        ]
        return {
            "department_id": department_id,
            "queue_type": department.queue_type.value,
            "business_date": business_date.isoformat(),
            "issued": self.sequence.issued_count(department, business_date),
            "counts": counts,
            "total": len(tokens),
            "avg_wait_minutes": round(sum(waits) / len(waits), 1) if waits else 0.0,
            "avg_service_minutes": round(sum(services) / len(services), 1) if services else 0.0,
            "waiting": waiting,
            "counters": [c.to_message() for c in self.directory.counters_for_department(department_id)],
        }
