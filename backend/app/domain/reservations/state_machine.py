"""
Reservation status graph.

Statuses only move forward along ALLOWED_TRANSITIONS; nothing leaves a
terminal status and no transition reverses a cancellation.
"""

from backend.app.core.exceptions import InvalidStateError
from backend.app.models.trip_enums import ReservationStatus

PASSENGER_CANCELLED_STATUSES = frozenset({
    ReservationStatus.CANCELLED_EARLY,
    ReservationStatus.CANCELLED_MEDIUM,
    ReservationStatus.CANCELLED_LATE,
})

DRIVER_CANCELLED_STATUSES = frozenset({
    ReservationStatus.CANCELLED_BY_DRIVER_EARLY,
    ReservationStatus.CANCELLED_BY_DRIVER_LATE,
})

CANCELLED_STATUSES = PASSENGER_CANCELLED_STATUSES | DRIVER_CANCELLED_STATUSES

TERMINAL_STATUSES = CANCELLED_STATUSES | frozenset({
    ReservationStatus.REJECTED,
    ReservationStatus.COMPLETED,
    ReservationStatus.NO_SHOW,
    ReservationStatus.EXPIRED,
})

# Statuses that hold seats on the trip
SEAT_HOLDING_STATUSES = frozenset({
    ReservationStatus.APPROVED,
    ReservationStatus.CONFIRMED,
})

ALLOWED_TRANSITIONS = {
    ReservationStatus.PENDING_APPROVAL: frozenset({
        ReservationStatus.APPROVED,
        ReservationStatus.REJECTED,
        ReservationStatus.WAITLISTED,
    }) | CANCELLED_STATUSES,
    ReservationStatus.WAITLISTED: frozenset({
        ReservationStatus.APPROVED,
        ReservationStatus.REJECTED,
    }) | CANCELLED_STATUSES,
    ReservationStatus.APPROVED: frozenset({
        ReservationStatus.CONFIRMED,
        ReservationStatus.REJECTED,
        ReservationStatus.COMPLETED,
        ReservationStatus.EXPIRED,
        ReservationStatus.NO_SHOW,
    }) | CANCELLED_STATUSES,
    ReservationStatus.CONFIRMED: frozenset({
        ReservationStatus.COMPLETED,
        ReservationStatus.NO_SHOW,
    }) | CANCELLED_STATUSES,
}


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    """
    Raises:
        InvalidStateError: If ``current -> target`` is not an edge of the graph.
    """
    if not can_transition(current, target):
        raise InvalidStateError(
            f"Reservation cannot move from {current.value} to {target.value}",
            details={"current_status": current.value, "target_status": target.value}
        )
