"""
Reservation lifecycle tests: booking, driver decisions, payment confirmation
and the seat inventory they move.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from backend.app.core.exceptions import (
    CapacityExceededError,
    ImmutableReservationError,
    InsufficientPermissionsError,
    InvalidStateError,
    TimingRestrictedError,
    ValidationFailedError,
)
from backend.app.domain.reservations.reservation_service import ReservationService
from backend.app.models.audit_log import AuditLog
from backend.app.models.billing_enums import FeeType, PaymentStatus
from backend.app.models.payment import Payment
from backend.app.models.reservation import Reservation
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import ReservationStatus, TripStatus
from backend.app.services.notification_service import drain_pending_notifications
from backend.app.services.seat_inventory import hold_seats, release_seats

DRIVER_ID = 10
PASSENGER_ID = 100
ADMIN_ID = 1


@pytest.mark.asyncio
async def test_create_reservation_waits_for_approval(db_session, make_trip, fetch, now, sent_notifications):
    trip = await make_trip(total_seats=3)

    reservation = await ReservationService.create_reservation(db_session, trip.id, PASSENGER_ID, 2, now=now)

    assert reservation.reservation_status == ReservationStatus.PENDING_APPROVAL
    assert reservation.total_price == Decimal("200.00")
    # No seats are held before the driver approves
    assert (await fetch(Trip, trip.id)).remaining_seats == 3

    await drain_pending_notifications()
    assert sent_notifications[0]["user_id"] == DRIVER_ID


@pytest.mark.asyncio
async def test_create_reservation_rejects_second_active_booking(db_session, make_trip, make_reservation, now):
    trip = await make_trip()
    await make_reservation(trip)

    with pytest.raises(ValidationFailedError):
        await ReservationService.create_reservation(db_session, trip.id, PASSENGER_ID, 1, now=now)


@pytest.mark.asyncio
async def test_create_reservation_inside_booking_cutoff(db_session, make_trip, now):
    trip = await make_trip(departure_in_hours=1)

    with pytest.raises(TimingRestrictedError):
        await ReservationService.create_reservation(db_session, trip.id, PASSENGER_ID, 1, now=now)


@pytest.mark.asyncio
async def test_create_reservation_more_seats_than_left(db_session, make_trip, now):
    trip = await make_trip(total_seats=2)

    with pytest.raises(CapacityExceededError):
        await ReservationService.create_reservation(db_session, trip.id, PASSENGER_ID, 3, now=now)


@pytest.mark.asyncio
async def test_approve_holds_seats_and_creates_pending_payment(db_session, make_trip, make_reservation, fetch, now):
    trip = await make_trip(total_seats=3)
    reservation = await make_reservation(trip, seats=2)

    approved = await ReservationService.approve_reservation(db_session, trip.id, reservation.id, DRIVER_ID, now=now)

    assert approved.reservation_status == ReservationStatus.APPROVED
    assert approved.payment.status == PaymentStatus.PENDING
    assert approved.payment.total_amount == Decimal("220.00")
    assert approved.payment.service_fee == Decimal("20.00")

    trip = await fetch(Trip, trip.id)
    assert trip.remaining_seats == 1
    assert trip.is_full is False


@pytest.mark.asyncio
async def test_approve_uses_active_fee_policy(db_session, make_trip, make_reservation, make_fee_policy, now):
    policy = await make_fee_policy(fee_type=FeeType.PER_SEAT, rate="5.00")
    trip = await make_trip(fee_policy_id=policy.id)
    reservation = await make_reservation(trip, seats=2)

    approved = await ReservationService.approve_reservation(db_session, trip.id, reservation.id, DRIVER_ID, now=now)

    assert approved.payment.service_fee == Decimal("10.00")
    assert approved.payment.total_amount == Decimal("210.00")


@pytest.mark.asyncio
async def test_approve_last_seat_marks_trip_full(db_session, make_trip, make_reservation, fetch, now):
    trip = await make_trip(total_seats=2)
    await make_reservation(trip, passenger_id=101, status=ReservationStatus.APPROVED)
    reservation = await make_reservation(trip)

    await ReservationService.approve_reservation(db_session, trip.id, reservation.id, DRIVER_ID, now=now)

    trip = await fetch(Trip, trip.id)
    assert trip.remaining_seats == 0
    assert trip.is_full is True


@pytest.mark.asyncio
async def test_approve_without_capacity(db_session, make_trip, make_reservation, now):
    trip = await make_trip(total_seats=2)
    await make_reservation(trip, passenger_id=101, seats=2, status=ReservationStatus.APPROVED)
    reservation = await make_reservation(trip)
    trip_id, reservation_id = trip.id, reservation.id

    with pytest.raises(CapacityExceededError):
        await ReservationService.approve_reservation(db_session, trip_id, reservation_id, DRIVER_ID, now=now)

    # The rollback expired every object in the session
    status = (await db_session.execute(
        select(Reservation.reservation_status).where(Reservation.id == reservation_id)
    )).scalar_one()
    assert status == ReservationStatus.PENDING_APPROVAL


@pytest.mark.asyncio
async def test_approve_by_other_driver_is_forbidden(db_session, make_trip, make_reservation, now):
    trip = await make_trip()
    reservation = await make_reservation(trip)

    with pytest.raises(InsufficientPermissionsError):
        await ReservationService.approve_reservation(db_session, trip.id, reservation.id, 999, now=now)


@pytest.mark.asyncio
async def test_approve_inside_cutoff_records_failed_audit(db_session, make_trip, make_reservation, now):
    trip = await make_trip(departure_in_hours=2)
    reservation = await make_reservation(trip)

    with pytest.raises(TimingRestrictedError):
        await ReservationService.approve_reservation(db_session, trip.id, reservation.id, DRIVER_ID, now=now)

    result = await db_session.execute(select(AuditLog).where(AuditLog.status == "FAILED"))
    failed = result.scalars().all()
    assert len(failed) == 1
    assert failed[0].action == "RESERVATION_APPROVED"
    assert failed[0].meta_data["error_code"] == "ERR_TIMING_001"


@pytest.mark.asyncio
async def test_waitlist_then_approve(db_session, make_trip, make_reservation, now):
    trip = await make_trip()
    reservation = await make_reservation(trip)

    waitlisted = await ReservationService.waitlist_reservation(db_session, trip.id, reservation.id, DRIVER_ID)
    assert waitlisted.reservation_status == ReservationStatus.WAITLISTED

    approved = await ReservationService.approve_reservation(db_session, trip.id, reservation.id, DRIVER_ID, now=now)
    assert approved.reservation_status == ReservationStatus.APPROVED


@pytest.mark.asyncio
async def test_reject_pending_keeps_seats(db_session, make_trip, make_reservation, fetch, now):
    trip = await make_trip(total_seats=3)
    reservation = await make_reservation(trip)

    rejected = await ReservationService.reject_reservation(db_session, trip.id, reservation.id, DRIVER_ID, now=now)

    assert rejected.reservation_status == ReservationStatus.REJECTED
    assert (await fetch(Trip, trip.id)).remaining_seats == 3


@pytest.mark.asyncio
async def test_reject_confirmed_is_immutable(db_session, make_trip, make_reservation, now):
    trip = await make_trip()
    reservation = await make_reservation(
        trip, status=ReservationStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED
    )

    with pytest.raises(ImmutableReservationError):
        await ReservationService.reject_reservation(db_session, trip.id, reservation.id, DRIVER_ID, now=now)


@pytest.mark.asyncio
async def test_reject_approved_inside_payment_window(db_session, make_trip, make_reservation, now):
    trip = await make_trip()
    reservation = await make_reservation(
        trip,
        status=ReservationStatus.APPROVED,
        approved_at=now - timedelta(hours=2),
        payment_status=PaymentStatus.PENDING
    )

    with pytest.raises(TimingRestrictedError):
        await ReservationService.reject_reservation(db_session, trip.id, reservation.id, DRIVER_ID, now=now)


@pytest.mark.asyncio
async def test_reject_approved_after_payment_window_releases_seats(db_session, make_trip, make_reservation, fetch, now):
    trip = await make_trip(total_seats=2)
    reservation = await make_reservation(
        trip,
        seats=2,
        status=ReservationStatus.APPROVED,
        approved_at=now - timedelta(hours=30),
        payment_status=PaymentStatus.PENDING
    )
    assert (await fetch(Trip, trip.id)).is_full is True

    rejected = await ReservationService.reject_reservation(db_session, trip.id, reservation.id, DRIVER_ID, now=now)

    assert rejected.reservation_status == ReservationStatus.REJECTED
    assert rejected.approved_at is None
    assert rejected.payment.status == PaymentStatus.CANCELLED

    trip = await fetch(Trip, trip.id)
    assert trip.remaining_seats == 2
    assert trip.is_full is False


@pytest.mark.asyncio
async def test_confirm_payment_confirms_reservation(db_session, make_trip, make_reservation, fetch, now):
    trip = await make_trip()
    reservation = await make_reservation(
        trip, status=ReservationStatus.APPROVED, payment_status=PaymentStatus.PENDING
    )
    payment_id = (await db_session.execute(
        select(Payment.id).where(Payment.reservation_id == reservation.id)
    )).scalar_one()

    payment = await ReservationService.confirm_payment(db_session, payment_id, ADMIN_ID, now=now)

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.verified_by_admin_id == ADMIN_ID
    assert (await fetch(Reservation, reservation.id)).reservation_status == ReservationStatus.CONFIRMED


@pytest.mark.asyncio
async def test_confirm_payment_twice(db_session, make_trip, make_reservation, now):
    trip = await make_trip()
    reservation = await make_reservation(
        trip, status=ReservationStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED
    )
    payment_id = (await db_session.execute(
        select(Payment.id).where(Payment.reservation_id == reservation.id)
    )).scalar_one()

    with pytest.raises(InvalidStateError):
        await ReservationService.confirm_payment(db_session, payment_id, ADMIN_ID, now=now)


@pytest.mark.asyncio
async def test_expire_unpaid_reservations(make_trip, make_reservation, fetch, session_factory, now):
    trip = await make_trip(total_seats=3, departure_in_hours=1)
    unpaid = await make_reservation(trip, status=ReservationStatus.APPROVED, payment_status=PaymentStatus.PENDING)
    paid = await make_reservation(
        trip, passenger_id=101, status=ReservationStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED
    )

    expired = await ReservationService.expire_unpaid_reservations(now=now, session_factory=session_factory)

    assert expired == [unpaid.id]
    assert (await fetch(Reservation, unpaid.id)).reservation_status == ReservationStatus.EXPIRED
    assert (await fetch(Reservation, paid.id)).reservation_status == ReservationStatus.CONFIRMED
    assert (await fetch(Trip, trip.id)).remaining_seats == 2


@pytest.mark.asyncio
async def test_reject_stale_pending_reservations(make_trip, make_reservation, fetch, session_factory, now):
    near = await make_trip(departure_in_hours=1)
    far = await make_trip(departure_in_hours=48)
    stale = await make_reservation(near)
    fresh = await make_reservation(far)

    rejected = await ReservationService.reject_stale_pending_reservations(now=now, session_factory=session_factory)

    assert rejected == [stale.id]
    assert (await fetch(Reservation, stale.id)).reservation_status == ReservationStatus.REJECTED
    assert (await fetch(Reservation, fresh.id)).reservation_status == ReservationStatus.PENDING_APPROVAL


@pytest.mark.asyncio
async def test_hold_seats_is_guarded(db_session, make_trip):
    trip = await make_trip(total_seats=2)

    trip = await hold_seats(db_session, trip.id, 2)
    assert trip.remaining_seats == 0
    assert trip.is_full is True

    with pytest.raises(CapacityExceededError):
        await hold_seats(db_session, trip.id, 1)


@pytest.mark.asyncio
async def test_release_seats_never_exceeds_capacity(db_session, make_trip):
    trip = await make_trip(total_seats=2)

    with pytest.raises(InvalidStateError):
        await release_seats(db_session, trip.id, 1)


@pytest.mark.asyncio
async def test_closed_trip_is_not_bookable(db_session, make_trip, now):
    trip = await make_trip(status=TripStatus.CANCELLED)

    with pytest.raises(InvalidStateError):
        await ReservationService.create_reservation(db_session, trip.id, PASSENGER_ID, 1, now=now)


async def payment_id_for(db, reservation_id):
    return (await db.execute(
        select(Payment.id).where(Payment.reservation_id == reservation_id)
    )).scalar_one()


@pytest.mark.asyncio
async def test_reject_payment_asks_for_new_proof(db_session, make_trip, make_reservation, fetch, sent_notifications):
    trip = await make_trip(total_seats=3)
    reservation = await make_reservation(
        trip, status=ReservationStatus.APPROVED, payment_status=PaymentStatus.PENDING
    )
    payment_id = await payment_id_for(db_session, reservation.id)

    payment = await ReservationService.reject_payment(
        db_session, payment_id, "Transfer not found in the bank statement", ADMIN_ID
    )

    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Transfer not found in the bank statement"
    # The passenger keeps the approved seat while they resend the proof
    assert (await fetch(Reservation, reservation.id)).reservation_status == ReservationStatus.APPROVED
    assert (await fetch(Trip, trip.id)).remaining_seats == 2

    audit = (await db_session.execute(
        select(AuditLog).where(AuditLog.action == "PAYMENT_REJECTED", AuditLog.status == "SUCCESS")
    )).scalar_one()
    assert audit.entity_id == payment_id

    await drain_pending_notifications()
    assert sent_notifications[-1]["user_id"] == PASSENGER_ID
    assert "Transfer not found" in sent_notifications[-1]["message"]


@pytest.mark.asyncio
async def test_rejected_payment_can_be_confirmed_after_new_proof(db_session, make_trip, make_reservation, fetch, now):
    trip = await make_trip()
    reservation = await make_reservation(
        trip, status=ReservationStatus.APPROVED, payment_status=PaymentStatus.PENDING
    )
    payment_id = await payment_id_for(db_session, reservation.id)
    await ReservationService.reject_payment(db_session, payment_id, "Amount does not match", ADMIN_ID)

    payment = await ReservationService.confirm_payment(db_session, payment_id, ADMIN_ID, now=now)

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.failure_reason is None
    assert (await fetch(Reservation, reservation.id)).reservation_status == ReservationStatus.CONFIRMED


@pytest.mark.asyncio
@pytest.mark.parametrize("payment_status", [PaymentStatus.COMPLETED, PaymentStatus.CANCELLED])
async def test_reject_payment_refuses_settled_payment(db_session, make_trip, make_reservation, payment_status):
    trip = await make_trip()
    reservation_status = (
        ReservationStatus.CONFIRMED if payment_status == PaymentStatus.COMPLETED else ReservationStatus.EXPIRED
    )
    reservation = await make_reservation(trip, status=reservation_status, payment_status=payment_status)
    payment_id = await payment_id_for(db_session, reservation.id)

    with pytest.raises(InvalidStateError):
        await ReservationService.reject_payment(db_session, payment_id, "Transfer not found anywhere", ADMIN_ID)

    status = (await db_session.execute(select(Payment.status).where(Payment.id == payment_id))).scalar_one()
    assert status == payment_status


@pytest.mark.asyncio
async def test_reject_payment_needs_a_reason(db_session, make_trip, make_reservation):
    trip = await make_trip()
    reservation = await make_reservation(
        trip, status=ReservationStatus.APPROVED, payment_status=PaymentStatus.PENDING
    )
    payment_id = await payment_id_for(db_session, reservation.id)

    with pytest.raises(ValidationFailedError):
        await ReservationService.reject_payment(db_session, payment_id, "  no  ", ADMIN_ID)


@pytest.mark.asyncio
async def test_rejected_payment_still_expires(make_trip, make_reservation, fetch, session_factory, now):
    trip = await make_trip(total_seats=3, departure_in_hours=1)
    unpaid = await make_reservation(trip, status=ReservationStatus.APPROVED, payment_status=PaymentStatus.FAILED)

    expired = await ReservationService.expire_unpaid_reservations(now=now, session_factory=session_factory)

    assert expired == [unpaid.id]
    assert (await fetch(Trip, trip.id)).remaining_seats == 3
