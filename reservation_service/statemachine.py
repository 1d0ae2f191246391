"""Reservation status transitions.

    pending --approve--> confirmed --activate--> active --complete--> completed
    pending --reject/cancel--> cancelled
    pending --expire--> expired
    confirmed|active --cancel--> cancelled
    confirmed|active --dispute--> disputed --resolve_dispute--> completed|cancelled
"""

import dataclasses
from datetime import datetime

from .domain import Reservation, ReservationStatus
from .errors import StateTransitionError

S = ReservationStatus

APPROVE = "approve"
REJECT = "reject"
CANCEL = "cancel"
EXPIRE = "expire"
ACTIVATE = "activate"
COMPLETE = "complete"
DISPUTE = "dispute"
RESOLVE_DISPUTE = "resolve_dispute"

EXTERNAL_EVENTS = (APPROVE, REJECT, CANCEL, DISPUTE, RESOLVE_DISPUTE)
CLOCK_EVENTS = (EXPIRE, ACTIVATE, COMPLETE)

TRANSITIONS: dict[tuple[ReservationStatus, str], frozenset[ReservationStatus]] = {
    (S.PENDING, APPROVE): frozenset({S.CONFIRMED}),
    (S.PENDING, REJECT): frozenset({S.CANCELLED}),
    (S.PENDING, CANCEL): frozenset({S.CANCELLED}),
    (S.PENDING, EXPIRE): frozenset({S.EXPIRED}),
    (S.CONFIRMED, ACTIVATE): frozenset({S.ACTIVE}),
    (S.CONFIRMED, CANCEL): frozenset({S.CANCELLED}),
    (S.CONFIRMED, DISPUTE): frozenset({S.DISPUTED}),
    (S.ACTIVE, CANCEL): frozenset({S.CANCELLED}),
    (S.ACTIVE, COMPLETE): frozenset({S.COMPLETED}),
    (S.ACTIVE, DISPUTE): frozenset({S.DISPUTED}),
    (S.DISPUTED, RESOLVE_DISPUTE): frozenset({S.COMPLETED, S.CANCELLED}),
}

_FIXED_TARGET = {
    APPROVE: S.CONFIRMED,
    REJECT: S.CANCELLED,
    CANCEL: S.CANCELLED,
    EXPIRE: S.EXPIRED,
    ACTIVATE: S.ACTIVE,
    COMPLETE: S.COMPLETED,
    DISPUTE: S.DISPUTED,
}

# fields each transition may touch besides status and its timestamp
ALLOWED_CHANGES = {
    APPROVE: frozenset({"payment"}),
    REJECT: frozenset({"cancelled_by", "cancellation_reason"}),
    CANCEL: frozenset({"cancelled_by", "cancellation_reason", "refund", "payment"}),
    EXPIRE: frozenset(),
    ACTIVATE: frozenset(),
    COMPLETE: frozenset(),
    DISPUTE: frozenset({"dispute"}),
    RESOLVE_DISPUTE: frozenset({"dispute", "refund", "payment", "cancelled_by", "cancellation_reason"}),
}

TIMESTAMP_FIELD = {
    S.CONFIRMED: "confirmed_at",
    S.ACTIVE: "activated_at",
    S.CANCELLED: "cancelled_at",
    S.COMPLETED: "completed_at",
    S.EXPIRED: "expired_at",
}


def target_status(event: str, outcome: ReservationStatus | None = None) -> ReservationStatus:
    if event == RESOLVE_DISPUTE:
        if outcome not in (S.COMPLETED, S.CANCELLED):
            raise ValueError(f"Dispute outcome must be completed or cancelled, got {outcome}")
        return outcome
    try:
        return _FIXED_TARGET[event]
    except KeyError:
        raise ValueError(f"Unknown event: {event}")


def is_repeat(current: ReservationStatus, event: str, outcome: ReservationStatus | None = None) -> bool:
    """The event was already applied: the reservation sits in the state it would move to."""
    return current == target_status(event, outcome)


def next_status(current: ReservationStatus, event: str, outcome: ReservationStatus | None = None) -> ReservationStatus:
    target = target_status(event, outcome)
    allowed = TRANSITIONS.get((current, event), frozenset())
    if target not in allowed:
        raise StateTransitionError(current, target, event)
    return target


def apply_transition(
    reservation: Reservation,
    event: str,
    now: datetime,
    outcome: ReservationStatus | None = None,
    **changes,
) -> Reservation:
    target = next_status(reservation.status, event, outcome)

    unexpected = set(changes) - ALLOWED_CHANGES[event]
    if unexpected:
        raise ValueError(f"{event} may not change {sorted(unexpected)}")

    ts_field = TIMESTAMP_FIELD.get(target)
    if ts_field and getattr(reservation, ts_field) is None:
        changes[ts_field] = now

    return dataclasses.replace(reservation, status=target, **changes)
