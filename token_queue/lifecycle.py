"""Token Lifecycle State Machine.

    waiting -> called -> in_service -> completed
    waiting | called              -> cancelled
    waiting | called              -> no_show     (after the grace period)
    waiting | called | in_service -> transferred (re-enters waiting elsewhere)

Every transition is a pure function: it validates the current status and
returns a *new* `Token`. On an invalid request it raises `InvalidTransition`
before building anything, so a failed call never leaves partial timestamps
behind. Queue membership and persistence are the caller's business.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

from .errors import InvalidRating, InvalidTransition
from .models import Token, TokenStatus, TransferRecord

W = TokenStatus.WAITING
C = TokenStatus.CALLED
S = TokenStatus.IN_SERVICE

ALLOWED: dict[str, frozenset[TokenStatus]] = {
    "call": frozenset({W}),
    "start_service": frozenset({C}),
    "complete": frozenset({S}),
    "cancel": frozenset({W, C}),
    "mark_no_show": frozenset({W, C}),
    "transfer": frozenset({W, C, S}),
}


def can(token: Token, action: str) -> bool:
    return token.status in ALLOWED[action]


def _require(token: Token, action: str) -> None:
    if token.status not in ALLOWED[action]:
        raise InvalidTransition(token.status.value, action)


def _minutes(start: datetime, end: datetime) -> float:
    return round((end - start).total_seconds() / 60.0, 2)


def _not_before(at: datetime, floor: datetime | None) -> datetime:
    # Keeps timestamps monotonic if clocks of different callers disagree.
    if floor is not None and at < floor:
        return floor
    return at


def call(token: Token, counter_id: str, at: datetime) -> Token:
    _require(token, "call")
    return replace(
        token,
        status=C,
        counter_id=counter_id,
        called_at=_not_before(at, token.issued_at),
        queue_position=None,
    )


def start_service(token: Token, staff_id: str | None, at: datetime) -> Token:
    _require(token, "start_service")
    started = _not_before(at, token.called_at)
    return replace(
        token,
        status=S,
        service_started_at=started,
        served_by=staff_id,
        wait_time_minutes=_minutes(token.issued_at, started),
    )


def complete(token: Token, at: datetime, notes: str | None = None, rating: int | None = None) -> Token:
    _require(token, "complete")
    if rating is not None and (isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5):
        raise InvalidRating(rating)
    started = token.service_started_at or token.issued_at
    finished = _not_before(at, started)
    return replace(
        token,
        status=TokenStatus.COMPLETED,
        completed_at=finished,
        service_time_minutes=_minutes(started, finished),
        notes=notes,
        rating=rating,
    )


def cancel(token: Token, reason: str | None) -> Token:
    _require(token, "cancel")
    return replace(
        token,
        status=TokenStatus.CANCELLED,
        cancel_reason=reason,
        queue_position=None,
    )


def no_show_due(token: Token, grace: timedelta, now: datetime) -> bool:
    """Has the grace period passed since the token was called (or issued)?"""
    since = token.called_at or token.issued_at
    return now - since >= grace


def mark_no_show(token: Token, grace: timedelta, at: datetime) -> Token:
    _require(token, "mark_no_show")
    if not no_show_due(token, grace, at):
        raise InvalidTransition(token.status.value, "mark_no_show", "grace period has not elapsed")
    return replace(
        token,
        status=TokenStatus.NO_SHOW,
        queue_position=None,
    )


def transfer(
    token: Token,
    new_department_id: str,
    new_counter_id: str | None,
    reason: str,
    at: datetime,
) -> Token:
    """Move a live token to another department; it waits there again."""
    _require(token, "transfer")
    record = TransferRecord(
        from_department=token.department_id,
        to_department=new_department_id,
        from_counter=token.counter_id,
        to_counter=new_counter_id,
        reason=reason,
        at=at,
    )
    return replace(
        token,
        department_id=new_department_id,
        status=W,
        counter_id=None,
        queue_position=None,
        called_at=None,
        service_started_at=None,
        served_by=None,
        wait_time_minutes=None,
        transfer_history=token.transfer_history + (record,),
    )
