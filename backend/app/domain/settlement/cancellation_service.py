"""
Cancellation & Refund Calculator (Domain Logic).

One calculator, three strategies selected by who cancels:

- PASSENGER: one reservation, refund tier by time before departure.
- DRIVER: the whole trip; every paid passenger gets the full trip price back.
- SYSTEM: the scheduler closes an expired trip that nobody paid for.

Whatever the strategy, the status changes, seat release and refund
records of one cancellation commit as a single unit.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from backend.app.core.exceptions import (
    AlreadyCancelledError,
    InsufficientPermissionsError,
    InvalidStateError,
    TripNotCancellableError,
    ValidationFailedError,
)
from backend.app.core.utils import ZERO, money_to_json, utcnow
from backend.app.domain.reservations.reservation_service import load_reservation
from backend.app.domain.reservations.state_machine import SEAT_HOLDING_STATUSES, TERMINAL_STATUSES
from backend.app.domain.reservations.transitions import (
    bulk_transition_reservations,
    transition_payment,
    transition_reservation,
    transition_trip,
)
from backend.app.domain.settlement.policy import (
    compute_driver_cancellation_tier,
    compute_passenger_refund_tier,
    compute_refund_amounts,
    hours_between,
)
from backend.app.models.billing_enums import UNPAID_PAYMENT_STATUSES, PaymentStatus, RefundStatus, RefundType
from backend.app.models.cancellation import Cancellation
from backend.app.models.notification import NotificationType
from backend.app.models.payment import Payment
from backend.app.models.refund import Refund
from backend.app.models.reservation import Reservation
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import CancelledBy, ReservationStatus, TripStatus
from backend.app.services.audit import AuditAction, audited_unit, log_event
from backend.app.services.notification_service import notify_user
from backend.app.services.seat_inventory import count_reservations_in_status, get_trip_fresh, release_seats

logger = logging.getLogger(__name__)

OPEN_TRIP_STATUSES = (TripStatus.PENDING, TripStatus.ACTIVE)

DRIVER_CANCELLABLE_STATUSES = (
    ReservationStatus.PENDING_APPROVAL,
    ReservationStatus.WAITLISTED,
    ReservationStatus.APPROVED,
    ReservationStatus.CONFIRMED,
)

SYSTEM_CANCELLABLE_STATUSES = (
    ReservationStatus.PENDING_APPROVAL,
    ReservationStatus.APPROVED,
    ReservationStatus.WAITLISTED,
)


@dataclass
class ReservationCancellationResult:
    reservation: Reservation
    cancellation: Cancellation
    refund: Optional[Refund] = None


@dataclass
class TripCancellationResult:
    trip: Trip
    cancellation: Cancellation
    affected_count: int
    refunds: List[Refund] = field(default_factory=list)


def _issue_refund(db: AsyncSession, payment: Payment, trip_price_portion, refund_percentage: int,
                  refund_type: RefundType) -> Refund:
    amounts = compute_refund_amounts(trip_price_portion, payment.service_fee, refund_percentage)
    refund = Refund(
        payment_id=payment.id,
        refund_amount=amounts.refund_amount,
        driver_compensation=amounts.driver_compensation,
        service_fee_retained=amounts.service_fee_retained,
        refund_type=refund_type,
        status=RefundStatus.PROCESSING
    )
    db.add(refund)
    return refund


class PassengerCancellation:
    """A passenger gives up their own reservation."""

    async def cancel(
        self,
        db: AsyncSession,
        reason: str,
        now: datetime,
        reservation_id: int,
        actor_id: Optional[int] = None,
        actor_username: Optional[str] = None,
        **_
    ) -> ReservationCancellationResult:
        reservation = await load_reservation(db, reservation_id)

        if actor_id is not None and reservation.passenger_id != actor_id:
            raise InsufficientPermissionsError("Only the passenger can cancel this reservation")

        previous_status = reservation.reservation_status
        if previous_status in TERMINAL_STATUSES:
            raise AlreadyCancelledError(
                f"Reservation is already {previous_status.value}",
                details={"reservation_status": previous_status.value}
            )

        trip = await get_trip_fresh(db, reservation.trip_id)
        if trip.status in (TripStatus.COMPLETED, TripStatus.CANCELLED):
            raise TripNotCancellableError(f"Trip is already {trip.status.value}")

        tier = compute_passenger_refund_tier(trip.departure_time, now, reservation.created_at, now=now)
        hours_before_departure = hours_between(now, trip.departure_time)

        reservation = await transition_reservation(db, reservation, tier.status)

        cancellation = Cancellation(
            cancelled_by=CancelledBy.PASSENGER,
            reason=reason,
            hours_before_departure=hours_before_departure,
            refund_percentage=tier.refund_percentage,
            reservation_id=reservation.id,
            trip_id=trip.id
        )
        db.add(cancellation)

        refund = None
        payment = reservation.payment
        if payment is not None and payment.status == PaymentStatus.COMPLETED:
            refund = _issue_refund(db, payment, reservation.total_price, tier.refund_percentage, tier.refund_type)
            await transition_payment(db, payment.id, PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
        elif payment is not None and payment.status in UNPAID_PAYMENT_STATUSES:
            await transition_payment(db, payment.id, payment.status, PaymentStatus.CANCELLED)

        if previous_status in SEAT_HOLDING_STATUSES:
            trip = await release_seats(db, trip.id, reservation.seats_reserved)

        await db.flush()

        await log_event(
            db,
            action=AuditAction.RESERVATION_CANCELLED,
            actor_id=actor_id,
            actor_username=actor_username,
            entity_type="reservation",
            entity_id=reservation.id,
            metadata={
                "trip_id": trip.id,
                "tier": tier.status.value,
                "refund_percentage": tier.refund_percentage,
                "hours_before_departure": round(hours_before_departure, 2),
                "refund_amount": money_to_json(refund.refund_amount) if refund else None,
                "driver_compensation": money_to_json(refund.driver_compensation) if refund else None,
            }
        )
        await db.commit()

        notify_user(
            reservation.passenger_id,
            "Reservation cancelled",
            f"Your reservation was cancelled. Refund: {tier.refund_percentage}% of the trip price.",
            link=f"/trips/{trip.id}",
            type=NotificationType.RESERVATION_UPDATE
        )
        notify_user(
            trip.driver_id,
            "Passenger cancelled",
            f"A passenger cancelled {reservation.seats_reserved} seat(s) on your trip.",
            link=f"/trips/{trip.id}",
            type=NotificationType.TRIP_UPDATE
        )
        return ReservationCancellationResult(reservation=reservation, cancellation=cancellation, refund=refund)


class DriverCancellation:
    """The driver calls off the whole trip."""

    async def cancel(
        self,
        db: AsyncSession,
        reason: str,
        now: datetime,
        trip_id: int,
        actor_id: Optional[int] = None,
        actor_username: Optional[str] = None,
        **_
    ) -> TripCancellationResult:
        trip = await get_trip_fresh(db, trip_id)

        if actor_id is not None and trip.driver_id != actor_id:
            raise InsufficientPermissionsError("Only the trip's driver can cancel it")

        if trip.status not in OPEN_TRIP_STATUSES:
            raise InvalidStateError(
                f"Trip is already {trip.status.value}",
                details={"trip_id": trip_id, "trip_status": trip.status.value}
            )

        tier = compute_driver_cancellation_tier(trip.departure_time, now)
        hours_before_departure = hours_between(now, trip.departure_time)

        await transition_trip(db, trip_id, OPEN_TRIP_STATUSES, TripStatus.CANCELLED, cancelled_at=now)

        cancellation = Cancellation(
            cancelled_by=CancelledBy.DRIVER,
            reason=reason,
            hours_before_departure=hours_before_departure,
            refund_percentage=None,
            trip_id=trip_id
        )
        db.add(cancellation)

        result = await db.execute(
            select(Reservation)
            .options(selectinload(Reservation.payment))
            .where(
                Reservation.trip_id == trip_id,
                Reservation.reservation_status.in_(DRIVER_CANCELLABLE_STATUSES)
            )
            .order_by(Reservation.id)
            .execution_options(populate_existing=True)
        )
        reservations = result.scalars().all()

        refunds = []
        passenger_ids = []
        for reservation in reservations:
            reservation = await transition_reservation(db, reservation, tier)
            passenger_ids.append(reservation.passenger_id)

            payment = reservation.payment
            if payment is not None and payment.status == PaymentStatus.COMPLETED:
                refunds.append(_issue_refund(db, payment, reservation.total_price, 100, RefundType.FULL_REFUND))
                await transition_payment(db, payment.id, PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
            elif payment is not None and payment.status in UNPAID_PAYMENT_STATUSES:
                await transition_payment(db, payment.id, payment.status, PaymentStatus.CANCELLED)

        await db.flush()

        await log_event(
            db,
            action=AuditAction.TRIP_CANCELLED_BY_DRIVER,
            actor_id=actor_id,
            actor_username=actor_username,
            entity_type="trip",
            entity_id=trip_id,
            metadata={
                "tier": tier.value,
                "hours_before_departure": round(hours_before_departure, 2),
                "affected_reservations": len(reservations),
                "refunds": len(refunds),
                "refunded_total": money_to_json(sum((r.refund_amount for r in refunds), ZERO)),
            }
        )
        await db.commit()

        logger.info("Trip %s cancelled by driver (%s), %d reservation(s) affected", trip_id, tier.value, len(reservations))
        for passenger_id in passenger_ids:
            notify_user(
                passenger_id,
                "Trip cancelled",
                "The driver cancelled the trip. Any payment you made will be refunded in full, minus the service fee.",
                link=f"/trips/{trip_id}",
                type=NotificationType.TRIP_UPDATE
            )

        trip = await get_trip_fresh(db, trip_id)
        return TripCancellationResult(
            trip=trip, cancellation=cancellation, affected_count=len(reservations), refunds=refunds
        )


class SystemCancellation:
    """The scheduler closes an expired trip with no paid passengers."""

    async def cancel(
        self,
        db: AsyncSession,
        reason: str,
        now: datetime,
        trip_id: int,
        **_
    ) -> TripCancellationResult:
        trip = await get_trip_fresh(db, trip_id)

        if trip.status not in OPEN_TRIP_STATUSES:
            raise InvalidStateError(
                f"Trip is already {trip.status.value}",
                details={"trip_id": trip_id, "trip_status": trip.status.value}
            )

        # A payment may have been confirmed since the scheduler counted; such a
        # trip must be completed instead, never cancelled under a paid passenger.
        confirmed = await count_reservations_in_status(db, trip_id, [ReservationStatus.CONFIRMED])
        if confirmed:
            raise InvalidStateError(
                "Trip has confirmed passengers and cannot be cancelled by the system",
                details={"trip_id": trip_id, "confirmed_reservations": confirmed}
            )

        await transition_trip(db, trip_id, OPEN_TRIP_STATUSES, TripStatus.CANCELLED, cancelled_at=now)

        cancellation = Cancellation(
            cancelled_by=CancelledBy.SYSTEM,
            reason=reason,
            hours_before_departure=0,
            refund_percentage=0,
            trip_id=trip_id
        )
        db.add(cancellation)

        result = await db.execute(
            select(Reservation.id, Reservation.passenger_id).where(
                Reservation.trip_id == trip_id,
                Reservation.reservation_status.in_(SYSTEM_CANCELLABLE_STATUSES)
            )
        )
        affected = result.all()
        affected_ids = [row.id for row in affected]

        affected_count = await bulk_transition_reservations(
            db, trip_id, SYSTEM_CANCELLABLE_STATUSES, ReservationStatus.CANCELLED_BY_DRIVER_LATE
        )

        if affected_ids:
            await db.execute(
                update(Payment)
                .where(Payment.reservation_id.in_(affected_ids), Payment.status.in_(UNPAID_PAYMENT_STATUSES))
                .values(status=PaymentStatus.CANCELLED)
                .execution_options(synchronize_session=False)
            )

        await db.flush()

        await log_event(
            db,
            action=AuditAction.TRIP_CANCELLED_BY_SYSTEM,
            entity_type="trip",
            entity_id=trip_id,
            metadata={"reason": reason, "affected_reservations": affected_count}
        )
        await db.commit()

        logger.info("Trip %s cancelled by system, %d reservation(s) affected", trip_id, affected_count)
        notify_user(
            trip.driver_id,
            "Trip closed",
            "Your trip ended without confirmed passengers and was closed automatically.",
            link=f"/trips/{trip_id}",
            type=NotificationType.TRIP_UPDATE
        )
        for row in affected:
            notify_user(
                row.passenger_id,
                "Trip closed",
                "The trip was closed without your reservation being confirmed.",
                link=f"/trips/{trip_id}",
                type=NotificationType.TRIP_UPDATE
            )

        trip = await get_trip_fresh(db, trip_id)
        return TripCancellationResult(trip=trip, cancellation=cancellation, affected_count=affected_count)


class CancellationCalculator:
    """
    Single entry point for every cancellation.

    Usage:
        result = await CancellationCalculator.cancel_reservation(db, reservation_id, "change of plans")
    """

    strategies = {
        CancelledBy.PASSENGER: PassengerCancellation(),
        CancelledBy.DRIVER: DriverCancellation(),
        CancelledBy.SYSTEM: SystemCancellation(),
    }

    audit_actions = {
        CancelledBy.PASSENGER: (AuditAction.RESERVATION_CANCELLED, "reservation"),
        CancelledBy.DRIVER: (AuditAction.TRIP_CANCELLED_BY_DRIVER, "trip"),
        CancelledBy.SYSTEM: (AuditAction.TRIP_CANCELLED_BY_SYSTEM, "trip"),
    }

    @classmethod
    async def cancel(
        cls,
        db: AsyncSession,
        cancelled_by: CancelledBy,
        reason: str,
        reservation_id: Optional[int] = None,
        trip_id: Optional[int] = None,
        actor_id: Optional[int] = None,
        actor_username: Optional[str] = None,
        now: Optional[datetime] = None
    ):
        """
        Dispatch to the strategy for ``cancelled_by``.

        Raises:
            ValidationFailedError: If the target id for the strategy is missing
            AppException subclasses from the strategy (the unit is rolled back)
        """
        now = now or utcnow()
        action, entity_type = cls.audit_actions[cancelled_by]
        entity_id = reservation_id if cancelled_by == CancelledBy.PASSENGER else trip_id

        async with audited_unit(db, action, actor_id=actor_id, actor_username=actor_username,
                                entity_type=entity_type, entity_id=entity_id):
            if entity_id is None:
                raise ValidationFailedError(f"{entity_type}_id is required for a {cancelled_by.value} cancellation")
            if not reason or not reason.strip():
                raise ValidationFailedError("A cancellation reason is required")

            return await cls.strategies[cancelled_by].cancel(
                db,
                reason=reason.strip(),
                now=now,
                reservation_id=reservation_id,
                trip_id=trip_id,
                actor_id=actor_id,
                actor_username=actor_username
            )

    @classmethod
    async def cancel_reservation(
        cls,
        db: AsyncSession,
        reservation_id: int,
        reason: str,
        actor_id: Optional[int] = None,
        actor_username: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ReservationCancellationResult:
        return await cls.cancel(db, CancelledBy.PASSENGER, reason, reservation_id=reservation_id,
                                actor_id=actor_id, actor_username=actor_username, now=now)

    @classmethod
    async def cancel_trip(
        cls,
        db: AsyncSession,
        trip_id: int,
        reason: str,
        actor_id: int,
        actor_username: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TripCancellationResult:
        return await cls.cancel(db, CancelledBy.DRIVER, reason, trip_id=trip_id,
                                actor_id=actor_id, actor_username=actor_username, now=now)

    @classmethod
    async def cancel_trip_by_system(
        cls,
        db: AsyncSession,
        trip_id: int,
        reason: str = "Trip expired without confirmed passengers",
        now: Optional[datetime] = None
    ) -> TripCancellationResult:
        return await cls.cancel(db, CancelledBy.SYSTEM, reason, trip_id=trip_id, now=now)
