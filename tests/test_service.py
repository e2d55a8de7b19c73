import threading
from datetime import date, time

import pytest

from conftest import T0, FakeClock, RecordingNotifier, make_directory
from token_queue.errors import (
    CapacityExceeded,
    CounterBusy,
    CounterUnavailable,
    DepartmentClosed,
    DuplicateActiveToken,
    InvalidPriority,
    InvalidRating,
    InvalidReorder,
    InvalidTransition,
    PersistenceError,
    UnknownCounter,
    UnknownDepartment,
    UnknownToken,
)
from token_queue.models import CounterStatus, Department, OpeningHours, TokenStatus
from token_queue.service import TokenService
from token_queue.store import InMemoryTokenStore


def positions(service, department_id):
    return {
        t.token_number: t.queue_position
        for t in service.store.load_waiting_tokens(department_id)
    }


def serve(service, counter_id, rating=None):
    token = service.call_next(counter_id)
    service.start_service(token.token_number, "staff")
    return service.complete_service(token.token_number, rating=rating)


# -------------------- issuance --------------------


def test_issue_token_fifo_example(service):
    a = service.issue_token("A", "AC")
    b = service.issue_token("B", "AC")
    c = service.issue_token("C", "AC")

    assert (a.queue_position, b.queue_position, c.queue_position) == (1, 2, 3)
    assert a.token_number == "AC-20241202-001"
    assert a.display_number == "AC001"
    assert a.status == TokenStatus.WAITING
    assert a.business_date == date(2024, 12, 2)
    assert service.call_next("AC-1").token_number == a.token_number


def test_issue_token_priority_example(service):
    a = service.issue_token("A", "CS", priority=3)
    b = service.issue_token("B", "CS", priority=8)

    assert service.get_token(b.token_number).queue_position == 1
    assert service.get_token(a.token_number).queue_position == 2
    assert service.call_next("CS-1").token_number == b.token_number


def test_issue_token_validates_input(service):
    with pytest.raises(InvalidPriority):
        service.issue_token("A", "CS", priority=0)
    with pytest.raises(InvalidPriority):
        service.issue_token("A", "CS", priority=11)
    with pytest.raises(UnknownDepartment):
        service.issue_token("A", "XX")
    # Nothing was consumed by the failed attempts.
    assert service.issue_token("A", "CS").token_number == "CS-20241202-001"


def test_one_active_token_per_customer(service):
    first = service.issue_token("alice", "CS")
    with pytest.raises(DuplicateActiveToken) as exc_info:
        service.issue_token("alice", "AC")
    assert exc_info.value.token_number == first.token_number

    service.cancel_token(first.token_number)
    again = service.issue_token("alice", "AC")
    assert again.status == TokenStatus.WAITING


def test_concurrent_issuance_for_one_customer(service):
    results = []
    barrier = threading.Barrier(4)

    def issue(department_id):
        barrier.wait()
        try:
            results.append(service.issue_token("alice", department_id))
        except DuplicateActiveToken as exc:
            results.append(exc)

    threads = [threading.Thread(target=issue, args=(d,)) for d in ("CS", "AC", "CS", "AC")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert len(service.customer_tokens("alice")) == 1
    assert service._customer_locks == {}


def test_customer_locks_are_dropped_after_use(service):
    for i in range(20):
        service.issue_token(f"cust{i}", "AC")
    with pytest.raises(DuplicateActiveToken):
        service.issue_token("cust0", "CS")
    assert service._customer_locks == {}


def test_concurrent_issuance_keeps_positions_contiguous(service):
    def issue(i):
        service.issue_token(f"cust{i}", "AC")

    threads = [threading.Thread(target=issue, args=(i,)) for i in range(25)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stored = positions(service, "AC")
    assert sorted(stored.values()) == list(range(1, 26))
    assert stored == service.engine.queue("AC").positions()


def test_capacity_exceeded(clock, notifier):
    directory = make_directory()
    directory.add_department(Department(id="SM", code="SM", max_tokens_per_day=2))
    service = TokenService(directory=directory, notifier=notifier, clock=clock)
    service.issue_token("a", "SM")
    t = service.issue_token("b", "SM")
    service.cancel_token(t.token_number)

    # Cancelled tokens still used up their number.
    with pytest.raises(CapacityExceeded):
        service.issue_token("c", "SM")


def test_closed_department(clock, notifier):
    directory = make_directory()
    directory.add_department(
        Department(id="LN", code="LN", operating_hours={0: OpeningHours(time(9, 0), time(17, 0))})
    )
    service = TokenService(directory=directory, notifier=notifier, clock=clock)
    assert service.issue_token("a", "LN").status == TokenStatus.WAITING

    clock.now = T0.replace(hour=18)
    with pytest.raises(DepartmentClosed):
        service.issue_token("b", "LN")

    clock.now = T0.replace(day=3)  # Tuesday: no hours configured
    with pytest.raises(DepartmentClosed):
        service.issue_token("c", "LN")


def test_issue_sends_issued_and_near_turn(service, notifier):
    tokens = [service.issue_token(f"c{i}", "AC").token_number for i in range(5)]
    assert notifier.of("issued") == tokens
    assert notifier.of("near_turn") == tokens[:3]

    service.call_next("AC-1")
    assert notifier.of("near_turn") == tokens[:4]


def test_notification_failures_do_not_undo_operations(store, clock):
    class Broken:
        def notify(self, event, token):
            raise RuntimeError("sms gateway down")

    service = TokenService(store=store, directory=make_directory(), notifier=Broken(), clock=clock)
    token = service.issue_token("alice", "AC")
    assert store.get_token(token.token_number).status == TokenStatus.WAITING


# -------------------- counter actions --------------------


def test_full_service_cycle_updates_statistics(service, clock, notifier):
    token = service.issue_token("alice", "CS")
    clock.advance(minutes=4)
    called = service.call_next("CS-1")
    assert called.token_number == token.token_number
    assert service.current_token("CS-1").token_number == token.token_number

    clock.advance(minutes=1)
    started = service.start_service(token.token_number, "staff-1")
    assert started.wait_time_minutes == 5.0
    assert started.served_by == "staff-1"

    clock.advance(minutes=6)
    done = service.complete_service(token.token_number, notes="ok", rating=4)
    assert done.status == TokenStatus.COMPLETED
    assert done.service_time_minutes == 6.0
    assert done.rating == 4

    counter = service.directory.get_counter("CS-1")
    assert counter.current_token_id is None
    assert counter.status == CounterStatus.ACTIVE
    assert service.current_token("CS-1") is None
    assert service.statistics.average_service_minutes("CS") == 6.0
    assert notifier.of("called") == [token.token_number]
    assert notifier.of("completed") == [token.token_number]


def test_call_next_on_empty_queue_returns_none(service):
    assert service.call_next("AC-1") is None
    assert service.directory.get_counter("AC-1").status == CounterStatus.ACTIVE


def test_call_next_errors(service):
    service.issue_token("a", "AC")
    service.issue_token("b", "AC")
    service.call_next("AC-1")
    with pytest.raises(CounterBusy):
        service.call_next("AC-1")
    with pytest.raises(UnknownCounter):
        service.call_next("ZZ-9")


def test_invalid_transition_leaves_token_unchanged(service):
    token = service.issue_token("alice", "CS")
    before = service.get_token(token.token_number)

    with pytest.raises(InvalidTransition):
        service.complete_service(token.token_number)
    with pytest.raises(InvalidTransition):
        service.start_service(token.token_number)

    assert service.get_token(token.token_number) == before
    assert service.engine.queue("CS").position_of(token.token_number) == 1


def test_bad_rating_keeps_token_in_service(service):
    token = service.issue_token("alice", "CS")
    service.call_next("CS-1")
    service.start_service(token.token_number)
    with pytest.raises(InvalidRating):
        service.complete_service(token.token_number, rating=9)
    assert service.get_token(token.token_number).status == TokenStatus.IN_SERVICE
    assert service.directory.get_counter("CS-1").current_token_id == token.token_number


def test_unknown_token(service):
    with pytest.raises(UnknownToken):
        service.start_service("CS-20241202-999")
    with pytest.raises(UnknownToken):
        service.cancel_token("CS-20241202-999")


# -------------------- leaving the queue --------------------


def test_cancel_compacts_positions(service, notifier):
    a = service.issue_token("A", "AC")
    b = service.issue_token("B", "AC")
    c = service.issue_token("C", "AC")

    cancelled = service.cancel_token(b.token_number, "left")

    assert cancelled.status == TokenStatus.CANCELLED
    assert cancelled.cancel_reason == "left"
    assert cancelled.queue_position is None
    assert positions(service, "AC") == {a.token_number: 1, c.token_number: 2}
    assert service.engine.queue("AC").positions() == {a.token_number: 1, c.token_number: 2}
    assert notifier.of("cancelled") == [b.token_number]

    with pytest.raises(InvalidTransition):
        service.cancel_token(b.token_number)


def test_cancel_called_token_frees_counter(service):
    token = service.issue_token("A", "AC")
    service.call_next("AC-1")
    service.cancel_token(token.token_number)
    assert service.directory.get_counter("AC-1").current_token_id is None


def test_no_show_after_grace_period(service, clock, notifier):
    token = service.issue_token("A", "AC")
    service.call_next("AC-1")

    with pytest.raises(InvalidTransition):
        service.mark_no_show(token.token_number)

    clock.advance(minutes=5)
    gone = service.mark_no_show(token.token_number)
    assert gone.status == TokenStatus.NO_SHOW
    assert gone.completed_at is None
    assert service.directory.get_counter("AC-1").current_token_id is None
    assert notifier.of("no_show") == [token.token_number]


def test_expire_no_shows_sweeps_called_tokens(service, clock):
    a = service.issue_token("A", "CS", priority=9)
    b = service.issue_token("B", "CS", priority=7)
    waiting = service.issue_token("C", "CS", priority=5)
    service.call_next("CS-1")
    clock.advance(minutes=3)
    service.call_next("CS-2")

    clock.advance(minutes=3)
    expired = service.expire_no_shows("CS")
    assert [t.token_number for t in expired] == [a.token_number]

    clock.advance(minutes=3)
    expired = service.expire_no_shows("CS")
    assert [t.token_number for t in expired] == [b.token_number]
    assert service.get_token(waiting.token_number).status == TokenStatus.WAITING
    assert service.get_token(waiting.token_number).queue_position == 1


# -------------------- transfer --------------------


def test_transfer_round_trip(service, notifier):
    a = service.issue_token("A", "CS")
    b = service.issue_token("B", "CS")
    x = service.issue_token("X", "AC")

    moved = service.transfer_token(a.token_number, "AC", reason="wrong desk")

    assert moved.department_id == "AC"
    assert moved.status == TokenStatus.WAITING
    assert moved.queue_position == 2
    assert positions(service, "CS") == {b.token_number: 1}
    assert positions(service, "AC") == {x.token_number: 1, a.token_number: 2}
    assert notifier.of("transferred") == [a.token_number]

    back = service.transfer_token(a.token_number, "CS", reason="back again")
    assert back.department_id == "CS"
    assert [(r.from_department, r.to_department) for r in back.transfer_history] == [("CS", "AC"), ("AC", "CS")]
    assert positions(service, "AC") == {x.token_number: 1}
    # Back at its own level, the returning token goes ahead of B.
    assert positions(service, "CS") == {a.token_number: 1, b.token_number: 2}


def test_transfer_in_service_token_releases_counter(service):
    token = service.issue_token("A", "CS")
    service.call_next("CS-1")
    service.start_service(token.token_number)

    moved = service.transfer_token(token.token_number, "AC", "AC-1", "needs accounts")

    assert moved.status == TokenStatus.WAITING
    assert moved.counter_id is None
    assert moved.transfer_history[-1].from_counter == "CS-1"
    assert moved.transfer_history[-1].to_counter == "AC-1"
    assert service.directory.get_counter("CS-1").current_token_id is None
    assert service.call_next("AC-1").token_number == token.token_number


def test_transfer_keeps_number_and_sequence(service):
    a = service.issue_token("A", "CS")
    service.transfer_token(a.token_number, "AC")
    # CS-...-001 is still taken even though it now waits in AC.
    assert service.issue_token("B", "CS").token_number == "CS-20241202-002"


def test_transfer_validation(service):
    token = service.issue_token("A", "CS")
    with pytest.raises(UnknownDepartment):
        service.transfer_token(token.token_number, "XX")
    with pytest.raises(UnknownCounter):
        service.transfer_token(token.token_number, "AC", "CS-2")
    assert service.get_token(token.token_number).department_id == "CS"

    service.cancel_token(token.token_number)
    with pytest.raises(InvalidTransition):
        service.transfer_token(token.token_number, "AC")


# -------------------- administration --------------------


def test_reorder_queue(service):
    a = service.issue_token("A", "AC")
    b = service.issue_token("B", "AC")
    c = service.issue_token("C", "AC")

    new = service.reorder_queue("AC", [c.token_number, a.token_number, b.token_number])

    assert new == {c.token_number: 1, a.token_number: 2, b.token_number: 3}
    assert positions(service, "AC") == new
    with pytest.raises(InvalidReorder):
        service.reorder_queue("AC", [a.token_number])
    assert service.call_next("AC-1").token_number == c.token_number


def test_set_counter_status(service):
    service.issue_token("A", "AC")
    assert service.set_counter_status("AC-1", "break").status == CounterStatus.BREAK
    with pytest.raises(CounterUnavailable):
        service.call_next("AC-1")

    service.set_counter_status("AC-1", CounterStatus.ACTIVE)
    service.call_next("AC-1")
    with pytest.raises(CounterBusy):
        service.set_counter_status("AC-1", CounterStatus.CLOSED)
    with pytest.raises(ValueError):
        service.set_counter_status("CS-1", CounterStatus.BUSY)


# -------------------- estimates and status --------------------


def test_estimate_wait(service):
    assert service.estimate_wait("CS") == 0.0
    service.issue_token("A", "CS", priority=8)
    service.issue_token("B", "CS", priority=5)
    assert service.estimate_wait("CS", priority=3) == 20.0
    # Only A ranks strictly higher than a new priority-5 token.
    assert service.estimate_wait("CS", priority=5) == 10.0
    assert service.estimate_wait("CS", priority=8) == 0.0
    with pytest.raises(InvalidPriority):
        service.estimate_wait("CS", priority=42)


def test_estimate_for_token(service):
    service.issue_token("A", "AC")
    b = service.issue_token("B", "AC")
    assert service.estimate_for_token(b.token_number) == 10.0

    service.call_next("AC-1")
    assert service.estimate_for_token(b.token_number) == 0.0


def test_queue_status(service, clock):
    a = service.issue_token("A", "AC")
    b = service.issue_token("B", "AC", priority=7)
    service.issue_token("C", "AC")
    clock.advance(minutes=2)
    serve(service, "AC-1")
    service.cancel_token(b.token_number)

    status = service.queue_status("AC")

    assert status["department_id"] == "AC"
    assert status["queue_type"] == "fifo"
    assert status["business_date"] == "2024-12-02"
    assert status["issued"] == 3
    assert status["total"] == 3
    assert status["counts"]["completed"] == 1
    assert status["counts"]["cancelled"] == 1
    assert status["counts"]["waiting"] == 1
    assert status["avg_wait_minutes"] == 2.0
    assert [w["position"] for w in status["waiting"]] == [1]
    assert status["waiting"][0]["estimated_wait_minutes"] == 0.0
    assert status["counters"][0]["counter_id"] == "AC-1"
    assert a.token_number not in [w["token_number"] for w in status["waiting"]]


def test_customer_tokens(service):
    first = service.issue_token("alice", "AC")
    service.cancel_token(first.token_number)
    second = service.issue_token("alice", "CS")
    assert [t.token_number for t in service.customer_tokens("alice")] == [first.token_number, second.token_number]
    assert service.customer_tokens("alice", date(2024, 12, 3)) == []


# -------------------- restart and failures --------------------


def test_restart_hydrates_queue_and_sequence(store, clock):
    before = TokenService(store=store, directory=make_directory(), notifier=RecordingNotifier(), clock=clock)
    a = before.issue_token("A", "CS", priority=3)
    b = before.issue_token("B", "CS", priority=9)

    after = TokenService(store=store, directory=make_directory(), notifier=RecordingNotifier(), clock=clock)

    assert after.engine.queue("CS").positions() == {b.token_number: 1, a.token_number: 2}
    assert after.issue_token("C", "CS").token_number == "CS-20241202-003"
    assert after.call_next("CS-1").token_number == b.token_number


class FlakyStore(InMemoryTokenStore):
    """After `fail_on(n)`, the n-th `save_token` call from then on raises, once."""

    def __init__(self):
        super().__init__()
        self._countdown = None

    def fail_on(self, n):
        self._countdown = n

    def save_token(self, token):
        if self._countdown is not None:
            self._countdown -= 1
            if self._countdown == 0:
                self._countdown = None
                raise OSError("disk full")
        return super().save_token(token)


class FlakyTransitions(InMemoryTokenStore):
    def __init__(self):
        super().__init__()
        self.fail = False

    def atomic_status_transition(self, *args, **kwargs):
        if self.fail:
            raise OSError("connection reset")
        return super().atomic_status_transition(*args, **kwargs)


def test_issue_rolls_back_when_persistence_fails(clock):
    store = FlakyStore()
    service = TokenService(store=store, directory=make_directory(), notifier=RecordingNotifier(), clock=clock)
    kept = service.issue_token("A", "AC")

    store.fail_on(1)
    with pytest.raises(PersistenceError):
        service.issue_token("B", "AC")

    assert service.engine.queue("AC").positions() == {kept.token_number: 1}
    assert service.customer_tokens("B") == []
    # The reserved number was handed back.
    assert service.issue_token("B", "AC").token_number == "AC-20241202-002"


def test_call_next_rolls_back_when_compaction_fails(clock):
    store = FlakyStore()
    service = TokenService(store=store, directory=make_directory(), notifier=RecordingNotifier(), clock=clock)
    a = service.issue_token("A", "AC")
    b = service.issue_token("B", "AC")

    # The status change commits, moving B up to position 1 does not.
    store.fail_on(1)
    with pytest.raises(PersistenceError):
        service.call_next("AC-1")

    assert service.get_token(a.token_number).status == TokenStatus.WAITING
    assert service.get_token(a.token_number).queue_position == 1
    assert service.get_token(b.token_number).queue_position == 2
    assert service.engine.queue("AC").positions() == {a.token_number: 1, b.token_number: 2}
    assert service.directory.get_counter("AC-1").current_token_id is None
    assert service.call_next("AC-1").token_number == a.token_number


def test_transfer_rolls_back_when_persistence_fails(clock):
    store = FlakyTransitions()
    service = TokenService(store=store, directory=make_directory(), notifier=RecordingNotifier(), clock=clock)
    a = service.issue_token("A", "CS", priority=8)
    b = service.issue_token("B", "CS")

    store.fail = True
    with pytest.raises(PersistenceError):
        service.transfer_token(a.token_number, "AC")
    store.fail = False

    token = service.get_token(a.token_number)
    assert token.department_id == "CS"
    assert token.transfer_history == ()
    assert service.engine.queue("CS").positions() == {a.token_number: 1, b.token_number: 2}
    assert len(service.engine.queue("AC")) == 0


def test_cancel_rolls_back_when_compaction_fails(clock):
    store = FlakyStore()
    service = TokenService(store=store, directory=make_directory(), notifier=RecordingNotifier(), clock=clock)
    a = service.issue_token("A", "AC")
    b = service.issue_token("B", "AC")

    store.fail_on(1)
    with pytest.raises(PersistenceError):
        service.cancel_token(a.token_number)

    assert service.get_token(a.token_number).status == TokenStatus.WAITING
    assert service.engine.queue("AC").positions() == {a.token_number: 1, b.token_number: 2}


def _three_in_ac():
    store = FlakyStore()
    service = TokenService(store=store, directory=make_directory(), notifier=RecordingNotifier(), clock=FakeClock())
    tokens = [service.issue_token(name, "AC").token_number for name in "ABC"]
    return store, service, tokens


def test_cancel_failing_midway_restores_stored_positions():
    store, service, (a, b, c) = _three_in_ac()

    # B moves up, then writing C's new position fails.
    store.fail_on(2)
    with pytest.raises(PersistenceError):
        service.cancel_token(a)

    expected = {a: 1, b: 2, c: 3}
    assert service.engine.queue("AC").positions() == expected
    assert positions(service, "AC") == expected


def test_call_next_failing_midway_restores_stored_positions():
    store, service, (a, b, c) = _three_in_ac()

    store.fail_on(2)
    with pytest.raises(PersistenceError):
        service.call_next("AC-1")

    expected = {a: 1, b: 2, c: 3}
    assert service.engine.queue("AC").positions() == expected
    assert positions(service, "AC") == expected
    assert service.call_next("AC-1").token_number == a


def test_reorder_failing_midway_restores_stored_positions():
    store, service, (a, b, c) = _three_in_ac()

    store.fail_on(2)
    with pytest.raises(PersistenceError):
        service.reorder_queue("AC", [c, a, b])

    expected = {a: 1, b: 2, c: 3}
    assert service.engine.queue("AC").positions() == expected
    assert positions(service, "AC") == expected
