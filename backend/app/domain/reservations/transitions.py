"""
Compare-and-swap status updates for reservations, trips and payments.

Every status change is an UPDATE whose WHERE clause names the status the
caller observed. Zero affected rows means someone else moved the row
first; the caller's unit of work must then roll back.
"""

from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from backend.app.core.exceptions import InvalidStateError
from backend.app.domain.reservations.state_machine import ensure_transition
from backend.app.models.billing_enums import PaymentStatus
from backend.app.models.payment import Payment
from backend.app.models.reservation import Reservation
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import ReservationStatus, TripStatus


async def transition_reservation(
    db: AsyncSession,
    reservation: Reservation,
    target: ReservationStatus,
    **values
) -> Reservation:
    """
    Move one reservation from its loaded status to ``target``.

    Raises:
        InvalidStateError: If the edge is not allowed or the row changed underneath us
    """
    current = reservation.reservation_status
    ensure_transition(current, target)

    result = await db.execute(
        update(Reservation)
        .where(Reservation.id == reservation.id, Reservation.reservation_status == current)
        .values(reservation_status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateError(
            "Reservation was modified concurrently",
            details={"reservation_id": reservation.id, "expected_status": current.value}
        )

    refreshed = await db.execute(
        select(Reservation)
        .options(selectinload(Reservation.payment))
        .where(Reservation.id == reservation.id)
        .execution_options(populate_existing=True)
    )
    return refreshed.scalar_one()


async def bulk_transition_reservations(
    db: AsyncSession,
    trip_id: int,
    sources: Iterable[ReservationStatus],
    target: ReservationStatus
) -> int:
    """Move every reservation of a trip that is in ``sources`` to ``target``. Returns the row count."""
    sources = list(sources)
    for source in sources:
        ensure_transition(source, target)

    result = await db.execute(
        update(Reservation)
        .where(Reservation.trip_id == trip_id, Reservation.reservation_status.in_(sources))
        .values(reservation_status=target)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def transition_trip(
    db: AsyncSession,
    trip_id: int,
    expected: Iterable[TripStatus],
    target: TripStatus,
    **values
) -> None:
    """
    Raises:
        InvalidStateError: If the trip is no longer in one of the ``expected`` statuses
    """
    expected = list(expected)
    result = await db.execute(
        update(Trip)
        .where(Trip.id == trip_id, Trip.status.in_(expected))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateError(
            f"Trip {trip_id} is no longer {'/'.join(s.value for s in expected)}",
            details={"trip_id": trip_id, "target_status": target.value}
        )


async def transition_payment(
    db: AsyncSession,
    payment_id: int,
    expected: PaymentStatus,
    target: PaymentStatus,
    **values
) -> None:
    """
    Raises:
        InvalidStateError: If the payment is no longer in ``expected``
    """
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == expected)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateError(
            f"Payment {payment_id} is no longer {expected.value}",
            details={"payment_id": payment_id, "target_status": target.value}
        )
