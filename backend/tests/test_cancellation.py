"""
Cancellation & refund tests for the passenger, driver and system strategies.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from backend.app.core.exceptions import (
    AlreadyCancelledError,
    InsufficientPermissionsError,
    InvalidStateError,
    TripNotCancellableError,
    ValidationFailedError,
)
from backend.app.domain.settlement.cancellation_service import CancellationCalculator
from backend.app.models.billing_enums import PaymentStatus, RefundStatus, RefundType
from backend.app.models.cancellation import Cancellation
from backend.app.models.payment import Payment
from backend.app.models.refund import Refund
from backend.app.models.reservation import Reservation
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import CancelledBy, ReservationStatus, TripStatus

DRIVER_ID = 10
PASSENGER_ID = 100


async def payment_for(db, reservation_id):
    result = await db.execute(
        select(Payment).where(Payment.reservation_id == reservation_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestPassengerCancellation:

    @pytest.mark.asyncio
    async def test_late_cancellation_of_paid_reservation(self, db_session, make_trip, make_reservation, fetch, now):
        trip = await make_trip(total_seats=3, departure_in_hours=5)
        reservation = await make_reservation(
            trip, status=ReservationStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED
        )

        result = await CancellationCalculator.cancel_reservation(
            db_session, reservation.id, "change of plans", actor_id=PASSENGER_ID, now=now
        )

        assert result.reservation.reservation_status == ReservationStatus.CANCELLED_LATE
        assert result.cancellation.refund_percentage == 50
        assert result.cancellation.cancelled_by == CancelledBy.PASSENGER
        assert result.cancellation.hours_before_departure == pytest.approx(5.0)

        refund = result.refund
        assert refund.refund_amount == Decimal("50.00")
        assert refund.driver_compensation == Decimal("50.00")
        assert refund.service_fee_retained == Decimal("10.00")
        assert refund.refund_type == RefundType.PARTIAL_REFUND_50
        assert refund.status == RefundStatus.PROCESSING

        assert (await payment_for(db_session, reservation.id)).status == PaymentStatus.REFUNDED
        assert (await fetch(Trip, trip.id)).remaining_seats == 3

    @pytest.mark.asyncio
    async def test_medium_cancellation_refunds_75(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip(departure_in_hours=18)
        reservation = await make_reservation(
            trip, seats=2, status=ReservationStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED
        )

        result = await CancellationCalculator.cancel_reservation(db_session, reservation.id, "sick", now=now)

        assert result.reservation.reservation_status == ReservationStatus.CANCELLED_MEDIUM
        assert result.refund.refund_amount == Decimal("150.00")
        assert result.refund.driver_compensation == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_grace_period_gives_full_refund_close_to_departure(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip(departure_in_hours=5)
        reservation = await make_reservation(trip, created_at=now - timedelta(minutes=30))

        result = await CancellationCalculator.cancel_reservation(db_session, reservation.id, "mistake", now=now)

        assert result.reservation.reservation_status == ReservationStatus.CANCELLED_EARLY
        assert result.cancellation.refund_percentage == 100
        assert result.refund is None

    @pytest.mark.asyncio
    async def test_unpaid_approved_reservation_cancels_payment(self, db_session, make_trip, make_reservation, fetch, now):
        trip = await make_trip(total_seats=2, departure_in_hours=48)
        reservation = await make_reservation(
            trip, status=ReservationStatus.APPROVED, payment_status=PaymentStatus.PENDING
        )

        result = await CancellationCalculator.cancel_reservation(db_session, reservation.id, "no longer needed", now=now)

        assert result.reservation.reservation_status == ReservationStatus.CANCELLED_EARLY
        assert result.refund is None
        assert (await payment_for(db_session, reservation.id)).status == PaymentStatus.CANCELLED
        assert (await fetch(Trip, trip.id)).remaining_seats == 2

    @pytest.mark.asyncio
    async def test_rejected_payment_is_cancelled_without_refund(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip(departure_in_hours=48)
        reservation = await make_reservation(
            trip, status=ReservationStatus.APPROVED, payment_status=PaymentStatus.FAILED
        )

        result = await CancellationCalculator.cancel_reservation(db_session, reservation.id, "gave up", now=now)

        assert result.refund is None
        assert (await payment_for(db_session, reservation.id)).status == PaymentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelling_twice(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip()
        reservation = await make_reservation(trip, status=ReservationStatus.CANCELLED_EARLY)

        with pytest.raises(AlreadyCancelledError):
            await CancellationCalculator.cancel_reservation(db_session, reservation.id, "again", now=now)

    @pytest.mark.asyncio
    async def test_trip_already_completed(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip(status=TripStatus.COMPLETED)
        reservation = await make_reservation(trip)

        with pytest.raises(TripNotCancellableError):
            await CancellationCalculator.cancel_reservation(db_session, reservation.id, "too late", now=now)

    @pytest.mark.asyncio
    async def test_other_passenger_is_forbidden(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip()
        reservation = await make_reservation(trip)

        with pytest.raises(InsufficientPermissionsError):
            await CancellationCalculator.cancel_reservation(db_session, reservation.id, "not mine", actor_id=555, now=now)

    @pytest.mark.asyncio
    async def test_blank_reason_is_rejected(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip()
        reservation = await make_reservation(trip)

        with pytest.raises(ValidationFailedError):
            await CancellationCalculator.cancel_reservation(db_session, reservation.id, "   ", now=now)


class TestDriverCancellation:

    @pytest.mark.asyncio
    async def test_early_driver_cancellation_refunds_paid_passengers(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip(departure_in_hours=60)
        paid = await make_reservation(
            trip, status=ReservationStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED
        )
        pending = await make_reservation(trip, passenger_id=101)

        result = await CancellationCalculator.cancel_trip(db_session, trip.id, "car broke down", actor_id=DRIVER_ID, now=now)

        assert result.trip.status == TripStatus.CANCELLED
        assert result.affected_count == 2
        assert result.cancellation.cancelled_by == CancelledBy.DRIVER
        assert result.cancellation.refund_percentage is None

        assert len(result.refunds) == 1
        refund = result.refunds[0]
        assert refund.refund_amount == Decimal("100.00")
        assert refund.driver_compensation == Decimal("0.00")
        assert refund.service_fee_retained == Decimal("10.00")
        assert refund.refund_type == RefundType.FULL_REFUND

        statuses = (await db_session.execute(
            select(Reservation.id, Reservation.reservation_status).where(Reservation.trip_id == trip.id)
        )).all()
        assert dict(statuses) == {
            paid.id: ReservationStatus.CANCELLED_BY_DRIVER_EARLY,
            pending.id: ReservationStatus.CANCELLED_BY_DRIVER_EARLY,
        }
        assert (await payment_for(db_session, paid.id)).status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_late_driver_cancellation(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip(departure_in_hours=10)
        reservation = await make_reservation(
            trip, status=ReservationStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED
        )

        result = await CancellationCalculator.cancel_trip(db_session, trip.id, "emergency", actor_id=DRIVER_ID, now=now)

        assert result.refunds[0].refund_amount == Decimal("100.00")
        reservation = (await db_session.execute(
            select(Reservation).where(Reservation.id == reservation.id).execution_options(populate_existing=True)
        )).scalar_one()
        assert reservation.reservation_status == ReservationStatus.CANCELLED_BY_DRIVER_LATE

    @pytest.mark.asyncio
    async def test_only_the_driver_can_cancel(self, db_session, make_trip, now):
        trip = await make_trip()

        with pytest.raises(InsufficientPermissionsError):
            await CancellationCalculator.cancel_trip(db_session, trip.id, "not mine", actor_id=999, now=now)

    @pytest.mark.asyncio
    async def test_cancelled_trip_cannot_be_cancelled_again(self, db_session, make_trip, now):
        trip = await make_trip(status=TripStatus.CANCELLED)

        with pytest.raises(InvalidStateError):
            await CancellationCalculator.cancel_trip(db_session, trip.id, "again", actor_id=DRIVER_ID, now=now)

        refunds = (await db_session.execute(select(Refund))).scalars().all()
        assert refunds == []


class TestSystemCancellation:

    @pytest.mark.asyncio
    async def test_closes_trip_without_paid_passengers(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip(departure_in_hours=-5)
        approved = await make_reservation(
            trip, status=ReservationStatus.APPROVED, payment_status=PaymentStatus.PENDING
        )
        waitlisted = await make_reservation(trip, passenger_id=101, status=ReservationStatus.WAITLISTED)

        result = await CancellationCalculator.cancel_trip_by_system(db_session, trip.id, now=now)

        assert result.trip.status == TripStatus.CANCELLED
        assert result.affected_count == 2
        assert result.cancellation.cancelled_by == CancelledBy.SYSTEM
        assert result.cancellation.refund_percentage == 0

        statuses = dict((await db_session.execute(
            select(Reservation.id, Reservation.reservation_status).where(Reservation.trip_id == trip.id)
        )).all())
        assert statuses[approved.id] == ReservationStatus.CANCELLED_BY_DRIVER_LATE
        assert statuses[waitlisted.id] == ReservationStatus.CANCELLED_BY_DRIVER_LATE
        assert (await payment_for(db_session, approved.id)).status == PaymentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_refuses_trip_with_confirmed_passenger(self, db_session, make_trip, make_reservation, now):
        trip = await make_trip(departure_in_hours=-5)
        await make_reservation(trip, status=ReservationStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED)
        trip_id = trip.id

        with pytest.raises(InvalidStateError):
            await CancellationCalculator.cancel_trip_by_system(db_session, trip_id, now=now)

        status = (await db_session.execute(select(Trip.status).where(Trip.id == trip_id))).scalar_one()
        assert status == TripStatus.ACTIVE
        cancellations = (await db_session.execute(select(Cancellation))).scalars().all()
        assert cancellations == []
