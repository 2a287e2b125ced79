"""
Seat inventory service.

Holds and releases trip seats. ``remaining_seats`` is never
read-modified-written in Python: each change is one guarded UPDATE whose
WHERE clause carries the capacity check, so two racing approvals cannot
both take the last seat.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, case, func as sql_func

from backend.app.core.exceptions import CapacityExceededError, InvalidStateError, ResourceNotFoundError
from backend.app.models.trip import Trip
from backend.app.models.reservation import Reservation

logger = logging.getLogger(__name__)


async def get_trip_fresh(db: AsyncSession, trip_id: int) -> Trip:
    """
    Load a trip, overwriting any stale copy in the identity map.

    Raises:
        ResourceNotFoundError: If the trip does not exist
    """
    result = await db.execute(
        select(Trip).where(Trip.id == trip_id).execution_options(populate_existing=True)
    )
    trip = result.scalar_one_or_none()
    if not trip:
        raise ResourceNotFoundError("Trip", trip_id)
    return trip


async def hold_seats(db: AsyncSession, trip_id: int, seats: int) -> Trip:
    """
    Take ``seats`` from the trip's remaining inventory.

    Args:
        db: Database session (caller owns the transaction)
        trip_id: Trip to take seats from
        seats: Number of seats, >= 1

    Returns:
        The refreshed trip

    Raises:
        CapacityExceededError: If fewer than ``seats`` remain
    """
    result = await db.execute(
        update(Trip)
        .where(Trip.id == trip_id, Trip.remaining_seats >= seats)
        .values(
            remaining_seats=Trip.remaining_seats - seats,
            is_full=case((Trip.remaining_seats - seats == 0, True), else_=False),
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        trip = await get_trip_fresh(db, trip_id)
        raise CapacityExceededError(requested=seats, available=trip.remaining_seats)

    return await get_trip_fresh(db, trip_id)


async def release_seats(db: AsyncSession, trip_id: int, seats: int) -> Trip:
    """
    Give ``seats`` back to the trip and clear ``is_full``.

    Raises:
        InvalidStateError: If the release would exceed the trip's capacity
    """
    result = await db.execute(
        update(Trip)
        .where(Trip.id == trip_id, Trip.remaining_seats + seats <= Trip.total_seats)
        .values(remaining_seats=Trip.remaining_seats + seats, is_full=False)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        logger.error("Seat release of %s on trip %s would exceed capacity", seats, trip_id)
        raise InvalidStateError(
            "Seat release would exceed trip capacity",
            details={"trip_id": trip_id, "seats": seats}
        )

    return await get_trip_fresh(db, trip_id)


async def count_reservations_in_status(db: AsyncSession, trip_id: int, statuses) -> int:
    """Count a trip's reservations whose status is in ``statuses``."""
    result = await db.execute(
        select(sql_func.count(Reservation.id)).where(
            Reservation.trip_id == trip_id,
            Reservation.reservation_status.in_(list(statuses))
        )
    )
    return result.scalar()
