"""
Reservation Service (Domain Logic).

Drives reservations through the state machine: creation, driver
approval / rejection / waitlisting, payment confirmation and the
scheduler's expiry sweeps.

Each operation is one unit of work: the seat counter, the status
compare-and-swap and the financial records it touches commit together
or not at all. Notifications are scheduled only after the commit.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from backend.app.core.config import settings
from backend.app.core.exceptions import (
    CapacityExceededError,
    ImmutableReservationError,
    InsufficientPermissionsError,
    InvalidStateError,
    ResourceNotFoundError,
    TimingRestrictedError,
    ValidationFailedError,
)
from backend.app.core.utils import as_utc, money_to_json, to_money, utcnow
from backend.app.db.session import get_session_factory
from backend.app.domain.reservations.state_machine import TERMINAL_STATUSES, ensure_transition
from backend.app.domain.reservations.transitions import (
    bulk_transition_reservations,
    transition_payment,
    transition_reservation,
)
from backend.app.domain.settlement.fee_policy_resolver import FeePolicyResolver
from backend.app.domain.settlement.policy import compute_payment_service_fee, hours_between
from backend.app.models.billing_enums import UNPAID_PAYMENT_STATUSES, PaymentStatus
from backend.app.models.notification import NotificationType
from backend.app.models.payment import Payment
from backend.app.models.reservation import Reservation
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import ReservationStatus, TripStatus
from backend.app.services.audit import AuditAction, audited_unit, log_event
from backend.app.services.notification_service import notify_user
from backend.app.services.seat_inventory import get_trip_fresh, hold_seats, release_seats

logger = logging.getLogger(__name__)

BOOKABLE_TRIP_STATUSES = (TripStatus.PENDING, TripStatus.ACTIVE)


async def load_reservation(db: AsyncSession, reservation_id: int, trip_id: Optional[int] = None) -> Reservation:
    """
    Load a reservation with its payment, bypassing stale identity-map copies.

    Raises:
        ResourceNotFoundError: If missing, or if it belongs to another trip
    """
    result = await db.execute(
        select(Reservation)
        .options(selectinload(Reservation.payment))
        .where(Reservation.id == reservation_id)
        .execution_options(populate_existing=True)
    )
    reservation = result.scalar_one_or_none()
    if not reservation or (trip_id is not None and reservation.trip_id != trip_id):
        raise ResourceNotFoundError("Reservation", reservation_id)
    return reservation


def _ensure_driver(trip: Trip, actor_id: int) -> None:
    if trip.driver_id != actor_id:
        raise InsufficientPermissionsError("Only the trip's driver can manage its reservations")


def _ensure_trip_open(trip: Trip) -> None:
    if trip.status not in BOOKABLE_TRIP_STATUSES:
        raise InvalidStateError(
            f"Trip {trip.id} is {trip.status.value}",
            details={"trip_id": trip.id, "trip_status": trip.status.value}
        )


def _trip_link(trip_id: int) -> str:
    return f"/trips/{trip_id}"


class ReservationService:

    @staticmethod
    async def create_reservation(
        db: AsyncSession,
        trip_id: int,
        passenger_id: int,
        seats: int,
        actor_username: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Reservation:
        """
        Request seats on a trip. The reservation waits for the driver's approval;
        no seats are held yet.

        Raises:
            ValidationFailedError: Seat count out of range, own trip, or an active reservation exists
            InvalidStateError: Trip is no longer open
            TimingRestrictedError: Departure is within the booking cutoff
            CapacityExceededError: Not enough seats left
        """
        now = now or utcnow()

        async with audited_unit(db, AuditAction.RESERVATION_CREATED, actor_id=passenger_id,
                                actor_username=actor_username, entity_type="trip", entity_id=trip_id):
            if not 1 <= seats <= settings.max_seats_per_reservation:
                raise ValidationFailedError(
                    f"Seats must be between 1 and {settings.max_seats_per_reservation}",
                    details={"seats": seats}
                )

            trip = await get_trip_fresh(db, trip_id)
            if trip.driver_id == passenger_id:
                raise ValidationFailedError("Drivers cannot book their own trip")
            _ensure_trip_open(trip)

            hours_until_departure = hours_between(now, trip.departure_time)
            if hours_until_departure < settings.booking_cutoff_hours:
                raise TimingRestrictedError(
                    f"Bookings close {settings.booking_cutoff_hours:g} hours before departure",
                    hours_until_departure=hours_until_departure
                )

            existing = await db.execute(
                select(Reservation.id).where(
                    Reservation.trip_id == trip_id,
                    Reservation.passenger_id == passenger_id,
                    Reservation.reservation_status.notin_(list(TERMINAL_STATUSES))
                )
            )
            if existing.first() is not None:
                raise ValidationFailedError("You already have an active reservation on this trip")

            if seats > trip.remaining_seats:
                raise CapacityExceededError(requested=seats, available=trip.remaining_seats)

            reservation = Reservation(
                trip_id=trip_id,
                passenger_id=passenger_id,
                seats_reserved=seats,
                total_price=to_money(trip.price_per_seat * seats),
                reservation_status=ReservationStatus.PENDING_APPROVAL,
                created_at=now
            )
            db.add(reservation)
            await db.flush()

            await log_event(
                db,
                action=AuditAction.RESERVATION_CREATED,
                actor_id=passenger_id,
                actor_username=actor_username,
                entity_type="reservation",
                entity_id=reservation.id,
                metadata={"trip_id": trip_id, "seats": seats, "total_price": money_to_json(reservation.total_price)}
            )
            await db.commit()

        notify_user(
            trip.driver_id,
            "New reservation request",
            f"A passenger requested {seats} seat(s) on your trip.",
            link=_trip_link(trip_id),
            type=NotificationType.RESERVATION_UPDATE
        )
        return await load_reservation(db, reservation.id)

    @staticmethod
    async def approve_reservation(
        db: AsyncSession,
        trip_id: int,
        reservation_id: int,
        actor_id: int,
        actor_username: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Reservation:
        """
        Driver accepts a reservation.

        Flow:
        1. Actor must be the trip's driver
        2. Departure must be outside the approval cutoff
        3. Hold the seats (guarded decrement, recomputes is_full)
        4. PENDING_APPROVAL/WAITLISTED -> APPROVED, approved_at = now
        5. Create the PENDING payment (trip price + service fee)

        Raises:
            ResourceNotFoundError, InsufficientPermissionsError,
            TimingRestrictedError, CapacityExceededError, InvalidStateError
        """
        now = now or utcnow()

        async with audited_unit(db, AuditAction.RESERVATION_APPROVED, actor_id=actor_id,
                                actor_username=actor_username, entity_type="reservation",
                                entity_id=reservation_id):
            reservation = await load_reservation(db, reservation_id, trip_id)
            trip = await get_trip_fresh(db, trip_id)

            _ensure_driver(trip, actor_id)
            _ensure_trip_open(trip)
            ensure_transition(reservation.reservation_status, ReservationStatus.APPROVED)

            hours_until_departure = hours_between(now, trip.departure_time)
            if hours_until_departure < settings.approval_cutoff_hours:
                raise TimingRestrictedError(
                    f"Reservations cannot be approved within {settings.approval_cutoff_hours:g} hours of departure",
                    hours_until_departure=hours_until_departure
                )

            if reservation.seats_reserved > trip.remaining_seats:
                raise CapacityExceededError(requested=reservation.seats_reserved, available=trip.remaining_seats)

            trip = await hold_seats(db, trip_id, reservation.seats_reserved)
            reservation = await transition_reservation(
                db, reservation, ReservationStatus.APPROVED, approved_at=now
            )

            fee_policy = await FeePolicyResolver.resolve_for_trip(db, trip)
            service_fee = compute_payment_service_fee(
                reservation.total_price, reservation.seats_reserved, fee_policy
            )
            payment = Payment(
                reservation_id=reservation.id,
                status=PaymentStatus.PENDING,
                total_amount=to_money(reservation.total_price) + service_fee,
                service_fee=service_fee,
                currency=settings.currency
            )
            db.add(payment)
            await db.flush()

            await log_event(
                db,
                action=AuditAction.RESERVATION_APPROVED,
                actor_id=actor_id,
                actor_username=actor_username,
                entity_type="reservation",
                entity_id=reservation.id,
                metadata={
                    "trip_id": trip_id,
                    "seats": reservation.seats_reserved,
                    "remaining_seats": trip.remaining_seats,
                    "payment_id": payment.id,
                    "total_amount": money_to_json(payment.total_amount),
                    "service_fee": money_to_json(service_fee),
                }
            )
            await db.commit()

        logger.info("Reservation %s approved on trip %s (%s seats left)", reservation_id, trip_id, trip.remaining_seats)
        notify_user(
            reservation.passenger_id,
            "Reservation approved",
            f"Your reservation was approved. Please pay {payment.total_amount} {payment.currency} "
            f"within {settings.payment_window_hours:g} hours.",
            link=_trip_link(trip_id),
            type=NotificationType.RESERVATION_UPDATE
        )
        return await load_reservation(db, reservation_id)

    @staticmethod
    async def reject_reservation(
        db: AsyncSession,
        trip_id: int,
        reservation_id: int,
        actor_id: int,
        actor_username: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Reservation:
        """
        Driver turns a reservation down.

        A CONFIRMED (paid) passenger can never be rejected. An APPROVED one is
        protected while their payment window is open and once departure is
        within the approval cutoff.

        Raises:
            ResourceNotFoundError, InsufficientPermissionsError,
            ImmutableReservationError, TimingRestrictedError, InvalidStateError
        """
        now = now or utcnow()

        async with audited_unit(db, AuditAction.RESERVATION_REJECTED, actor_id=actor_id,
                                actor_username=actor_username, entity_type="reservation",
                                entity_id=reservation_id):
            reservation = await load_reservation(db, reservation_id, trip_id)
            trip = await get_trip_fresh(db, trip_id)

            _ensure_driver(trip, actor_id)

            previous_status = reservation.reservation_status
            if previous_status == ReservationStatus.CONFIRMED:
                raise ImmutableReservationError()

            ensure_transition(previous_status, ReservationStatus.REJECTED)

            if previous_status == ReservationStatus.APPROVED:
                payment_deadline = as_utc(reservation.approved_at) + timedelta(hours=settings.payment_window_hours)
                if now < payment_deadline:
                    raise TimingRestrictedError(
                        "The passenger is still within their payment window",
                        hours_until_departure=hours_between(now, trip.departure_time)
                    )
                hours_until_departure = hours_between(now, trip.departure_time)
                if hours_until_departure < settings.approval_cutoff_hours:
                    raise TimingRestrictedError(
                        f"Approved passengers cannot be removed within {settings.approval_cutoff_hours:g} hours of departure",
                        hours_until_departure=hours_until_departure
                    )

            reservation = await transition_reservation(
                db, reservation, ReservationStatus.REJECTED, approved_at=None
            )

            if previous_status == ReservationStatus.APPROVED:
                trip = await release_seats(db, trip_id, reservation.seats_reserved)
                payment = reservation.payment
                if payment is not None and payment.status in UNPAID_PAYMENT_STATUSES:
                    await transition_payment(db, payment.id, payment.status, PaymentStatus.CANCELLED)

            await log_event(
                db,
                action=AuditAction.RESERVATION_REJECTED,
                actor_id=actor_id,
                actor_username=actor_username,
                entity_type="reservation",
                entity_id=reservation_id,
                metadata={"trip_id": trip_id, "previous_status": previous_status.value}
            )
            await db.commit()

        notify_user(
            reservation.passenger_id,
            "Reservation rejected",
            "The driver could not accept your reservation.",
            link=_trip_link(trip_id),
            type=NotificationType.RESERVATION_UPDATE
        )
        return await load_reservation(db, reservation_id)

    @staticmethod
    async def waitlist_reservation(
        db: AsyncSession,
        trip_id: int,
        reservation_id: int,
        actor_id: int,
        actor_username: Optional[str] = None
    ) -> Reservation:
        """Driver parks a pending request on the waitlist."""
        async with audited_unit(db, AuditAction.RESERVATION_WAITLISTED, actor_id=actor_id,
                                actor_username=actor_username, entity_type="reservation",
                                entity_id=reservation_id):
            reservation = await load_reservation(db, reservation_id, trip_id)
            trip = await get_trip_fresh(db, trip_id)

            _ensure_driver(trip, actor_id)
            _ensure_trip_open(trip)

            reservation = await transition_reservation(db, reservation, ReservationStatus.WAITLISTED)

            await log_event(
                db,
                action=AuditAction.RESERVATION_WAITLISTED,
                actor_id=actor_id,
                actor_username=actor_username,
                entity_type="reservation",
                entity_id=reservation_id,
                metadata={"trip_id": trip_id}
            )
            await db.commit()

        notify_user(
            reservation.passenger_id,
            "Reservation waitlisted",
            "The driver placed your request on the waitlist.",
            link=_trip_link(trip_id),
            type=NotificationType.RESERVATION_UPDATE
        )
        return await load_reservation(db, reservation_id)

    @staticmethod
    async def confirm_payment(
        db: AsyncSession,
        payment_id: int,
        actor_id: int,
        actor_username: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Payment:
        """
        Admin verifies a passenger's transfer.

        Payment PENDING (or FAILED, once the passenger sent new proof) ->
        COMPLETED and reservation APPROVED -> CONFIRMED in one unit; from
        here the passenger's seat is guaranteed.

        Raises:
            ResourceNotFoundError: Payment missing
            InvalidStateError: Payment already settled, reservation not APPROVED, or trip closed
        """
        now = now or utcnow()

        async with audited_unit(db, AuditAction.PAYMENT_CONFIRMED, actor_id=actor_id,
                                actor_username=actor_username, entity_type="payment",
                                entity_id=payment_id):
            payment = await db.get(Payment, payment_id, populate_existing=True)
            if not payment:
                raise ResourceNotFoundError("Payment", payment_id)

            if payment.status not in UNPAID_PAYMENT_STATUSES:
                raise InvalidStateError(
                    f"Payment is {payment.status.value}, expected PENDING or FAILED",
                    details={"payment_id": payment_id, "payment_status": payment.status.value}
                )

            reservation = await load_reservation(db, payment.reservation_id)
            trip = await get_trip_fresh(db, reservation.trip_id)
            _ensure_trip_open(trip)

            await transition_payment(
                db, payment_id, payment.status, PaymentStatus.COMPLETED,
                completed_at=now, verified_by_admin_id=actor_id, failure_reason=None
            )
            reservation = await transition_reservation(db, reservation, ReservationStatus.CONFIRMED)

            await log_event(
                db,
                action=AuditAction.PAYMENT_CONFIRMED,
                actor_id=actor_id,
                actor_username=actor_username,
                entity_type="payment",
                entity_id=payment_id,
                metadata={
                    "reservation_id": reservation.id,
                    "trip_id": trip.id,
                    "total_amount": money_to_json(payment.total_amount),
                }
            )
            await db.commit()

        notify_user(
            reservation.passenger_id,
            "Payment confirmed",
            "Your payment was verified. Your seat is confirmed.",
            link=_trip_link(trip.id),
            type=NotificationType.BILLING_UPDATE
        )
        return await db.get(Payment, payment_id, populate_existing=True)

    @staticmethod
    async def reject_payment(
        db: AsyncSession,
        payment_id: int,
        reason: str,
        actor_id: int,
        actor_username: Optional[str] = None
    ) -> Payment:
        """
        Admin could not verify a passenger's transfer.

        Payment PENDING -> FAILED with the reason recorded. The reservation
        stays APPROVED and keeps its seats, so the passenger can send the
        proof again until the unpaid-expiry sweep closes it.

        Raises:
            ValidationFailedError: Reason too short
            ResourceNotFoundError: Payment missing
            InvalidStateError: Payment is not PENDING
        """
        async with audited_unit(db, AuditAction.PAYMENT_REJECTED, actor_id=actor_id,
                                actor_username=actor_username, entity_type="payment",
                                entity_id=payment_id):
            reason = (reason or "").strip()
            if len(reason) < settings.min_payment_rejection_reason_length:
                raise ValidationFailedError(
                    f"The reason must be at least {settings.min_payment_rejection_reason_length} characters"
                )

            payment = await db.get(Payment, payment_id, populate_existing=True)
            if not payment:
                raise ResourceNotFoundError("Payment", payment_id)

            if payment.status != PaymentStatus.PENDING:
                raise InvalidStateError(
                    f"Payment is {payment.status.value}, expected PENDING",
                    details={"payment_id": payment_id, "payment_status": payment.status.value}
                )

            reservation = await load_reservation(db, payment.reservation_id)

            await transition_payment(
                db, payment_id, PaymentStatus.PENDING, PaymentStatus.FAILED, failure_reason=reason
            )

            await log_event(
                db,
                action=AuditAction.PAYMENT_REJECTED,
                actor_id=actor_id,
                actor_username=actor_username,
                entity_type="payment",
                entity_id=payment_id,
                metadata={
                    "reservation_id": reservation.id,
                    "trip_id": reservation.trip_id,
                    "total_amount": money_to_json(payment.total_amount),
                    "reason": reason,
                }
            )
            await db.commit()

        logger.info("Payment %s rejected for reservation %s", payment_id, reservation.id)
        notify_user(
            reservation.passenger_id,
            "Payment rejected",
            f"Your payment could not be verified. Reason: {reason}. "
            "Please check the details and send the proof again.",
            link=f"{_trip_link(reservation.trip_id)}/pay",
            type=NotificationType.BILLING_UPDATE
        )
        return await db.get(Payment, payment_id, populate_existing=True)

    @staticmethod
    async def complete_trip_reservations(db: AsyncSession, trip_id: int) -> int:
        """
        APPROVED and CONFIRMED reservations of a completing trip -> COMPLETED.

        Scheduler only; runs inside the trip completion unit (no commit here).
        """
        return await bulk_transition_reservations(
            db,
            trip_id,
            [ReservationStatus.APPROVED, ReservationStatus.CONFIRMED],
            ReservationStatus.COMPLETED
        )

    @staticmethod
    async def expire_unpaid_reservations(
        now: Optional[datetime] = None,
        session_factory=None
    ) -> List[int]:
        """
        Expire APPROVED reservations still unpaid close to departure.

        Each reservation is handled in its own session; one failure is logged
        and does not stop the sweep.

        Returns:
            IDs of the reservations that were expired
        """
        now = now or utcnow()
        session_factory = session_factory or get_session_factory()
        horizon = now + timedelta(hours=settings.unpaid_expiry_hours)

        async with session_factory() as session:
            result = await session.execute(
                select(Reservation.id)
                .join(Trip, Trip.id == Reservation.trip_id)
                .join(Payment, Payment.reservation_id == Reservation.id)
                .where(
                    Reservation.reservation_status == ReservationStatus.APPROVED,
                    Payment.status.in_(UNPAID_PAYMENT_STATUSES),
                    Trip.status.in_(BOOKABLE_TRIP_STATUSES),
                    Trip.departure_time > now,
                    Trip.departure_time <= horizon
                )
                .order_by(Reservation.id)
            )
            candidate_ids = list(result.scalars().all())

        expired = []
        for reservation_id in candidate_ids:
            async with session_factory() as session:
                try:
                    await ReservationService._expire_one(session, reservation_id)
                except InvalidStateError as e:
                    logger.warning("Skipping expiry of reservation %s: %s", reservation_id, e.message)
                    continue
                except Exception:
                    logger.exception("Failed to expire reservation %s", reservation_id)
                    continue
            expired.append(reservation_id)

        if expired:
            logger.info("Expired %d unpaid reservation(s): %s", len(expired), expired)
        return expired

    @staticmethod
    async def _expire_one(db: AsyncSession, reservation_id: int) -> None:
        async with audited_unit(db, AuditAction.RESERVATION_EXPIRED, entity_type="reservation",
                                entity_id=reservation_id):
            reservation = await load_reservation(db, reservation_id)
            payment = reservation.payment
            if payment is None or payment.status not in UNPAID_PAYMENT_STATUSES:
                raise InvalidStateError("Reservation is no longer awaiting payment")

            reservation = await transition_reservation(db, reservation, ReservationStatus.EXPIRED)
            await release_seats(db, reservation.trip_id, reservation.seats_reserved)
            await transition_payment(db, payment.id, payment.status, PaymentStatus.CANCELLED)

            await log_event(
                db,
                action=AuditAction.RESERVATION_EXPIRED,
                entity_type="reservation",
                entity_id=reservation_id,
                metadata={"trip_id": reservation.trip_id, "payment_id": payment.id}
            )
            await db.commit()

        notify_user(
            reservation.passenger_id,
            "Reservation expired",
            "Your reservation expired because the payment was not received in time.",
            link=_trip_link(reservation.trip_id),
            type=NotificationType.RESERVATION_UPDATE
        )

    @staticmethod
    async def reject_stale_pending_reservations(
        now: Optional[datetime] = None,
        session_factory=None
    ) -> List[int]:
        """
        Reject requests the driver never answered once departure is near.

        Returns:
            IDs of the reservations that were rejected
        """
        now = now or utcnow()
        session_factory = session_factory or get_session_factory()
        horizon = now + timedelta(hours=settings.unpaid_expiry_hours)

        async with session_factory() as session:
            result = await session.execute(
                select(Reservation.id)
                .join(Trip, Trip.id == Reservation.trip_id)
                .where(
                    Reservation.reservation_status == ReservationStatus.PENDING_APPROVAL,
                    Trip.status == TripStatus.ACTIVE,
                    Trip.departure_time <= horizon
                )
                .order_by(Reservation.id)
            )
            candidate_ids = list(result.scalars().all())

        rejected = []
        for reservation_id in candidate_ids:
            async with session_factory() as session:
                try:
                    await ReservationService._reject_stale_one(session, reservation_id)
                except InvalidStateError as e:
                    logger.warning("Skipping stale rejection of reservation %s: %s", reservation_id, e.message)
                    continue
                except Exception:
                    logger.exception("Failed to reject stale reservation %s", reservation_id)
                    continue
            rejected.append(reservation_id)

        if rejected:
            logger.info("Rejected %d stale pending reservation(s): %s", len(rejected), rejected)
        return rejected

    @staticmethod
    async def _reject_stale_one(db: AsyncSession, reservation_id: int) -> None:
        async with audited_unit(db, AuditAction.RESERVATION_REJECTED, entity_type="reservation",
                                entity_id=reservation_id):
            reservation = await load_reservation(db, reservation_id)
            reservation = await transition_reservation(
                db, reservation, ReservationStatus.REJECTED, approved_at=None
            )

            await log_event(
                db,
                action=AuditAction.RESERVATION_REJECTED,
                entity_type="reservation",
                entity_id=reservation_id,
                metadata={"trip_id": reservation.trip_id, "reason": "driver did not respond before departure"}
            )
            await db.commit()

        notify_user(
            reservation.passenger_id,
            "Reservation not answered",
            "The driver did not respond to your request before departure.",
            link=_trip_link(reservation.trip_id),
            type=NotificationType.RESERVATION_UPDATE
        )
