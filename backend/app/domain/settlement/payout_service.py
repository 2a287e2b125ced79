"""
Driver Payout Service (Domain Logic).

Computes what a driver is owed for a completed trip and records it.
Must be transactional and idempotent: at most one payout per trip.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from backend.app.core.config import settings
from backend.app.core.exceptions import AlreadyExistsError, InvalidStateError
from backend.app.core.utils import ZERO, money_to_json, to_money
from backend.app.domain.settlement.fee_policy_resolver import FeePolicyResolver
from backend.app.domain.settlement.policy import compute_service_fee
from backend.app.models.billing_enums import PaymentStatus, PayoutStatus
from backend.app.models.driver_payout import DriverPayout
from backend.app.models.notification import NotificationType
from backend.app.models.reservation import Reservation
from backend.app.models.trip_enums import ReservationStatus, TripStatus
from backend.app.services.audit import AuditAction, audited_unit, log_event
from backend.app.services.notification_service import notify_user
from backend.app.services.seat_inventory import get_trip_fresh

logger = logging.getLogger(__name__)

# Reservations whose completed payment counts towards the driver's income
PAYING_STATUSES = (
    ReservationStatus.APPROVED,
    ReservationStatus.CONFIRMED,
    ReservationStatus.COMPLETED,
)


@dataclass(frozen=True)
class PayoutCalculation:
    trip_id: int
    driver_id: int
    total_received: Decimal
    service_fee: Decimal
    late_cancellation_penalty: Decimal
    late_cancellation_count: int
    payout_amount: Decimal
    valid_passengers_count: int
    currency: str

    @property
    def status(self) -> PayoutStatus:
        return PayoutStatus.ON_HOLD if self.payout_amount == ZERO else PayoutStatus.PENDING

    def notes(self) -> Optional[str]:
        if not self.late_cancellation_count:
            return None
        return (
            f"{self.late_cancellation_count} late cancellation(s) deducted "
            f"({self.late_cancellation_penalty} {self.currency})"
        )


class PayoutService:

    @staticmethod
    async def calculate_driver_payout(db: AsyncSession, trip_id: int) -> PayoutCalculation:
        """
        Compute the payout breakdown for a trip without persisting anything.

        Flow:
        1. Valid reservations: APPROVED/CONFIRMED/COMPLETED with a COMPLETED payment
        2. total_received = sum of their payments' total_amount
        3. service_fee from the trip's fee policy, else its flat fee, else 0
        4. late_cancellation_penalty = price_per_seat per CANCELLED_LATE reservation
        5. payout_amount = max(0, received - fee - penalty)

        Raises:
            ResourceNotFoundError: If the trip does not exist
        """
        trip = await get_trip_fresh(db, trip_id)

        result = await db.execute(
            select(Reservation)
            .options(selectinload(Reservation.payment))
            .where(Reservation.trip_id == trip_id)
            .execution_options(populate_existing=True)
        )
        reservations = result.scalars().all()

        valid = [
            r for r in reservations
            if r.reservation_status in PAYING_STATUSES
            and r.payment is not None
            and r.payment.status == PaymentStatus.COMPLETED
        ]
        total_received = sum((to_money(r.payment.total_amount) for r in valid), ZERO)

        fee_policy = await FeePolicyResolver.resolve_for_trip(db, trip)
        service_fee = compute_service_fee(total_received, len(valid), fee_policy, trip.service_fee)

        late_count = sum(1 for r in reservations if r.reservation_status == ReservationStatus.CANCELLED_LATE)
        penalty = to_money(to_money(trip.price_per_seat) * late_count)

        payout_amount = max(ZERO, total_received - service_fee - penalty)

        return PayoutCalculation(
            trip_id=trip.id,
            driver_id=trip.driver_id,
            total_received=total_received,
            service_fee=service_fee,
            late_cancellation_penalty=penalty,
            late_cancellation_count=late_count,
            payout_amount=payout_amount,
            valid_passengers_count=len(valid),
            currency=settings.currency
        )

    @staticmethod
    async def create_driver_payout(
        db: AsyncSession,
        trip_id: int,
        actor_id: Optional[int] = None,
        actor_username: Optional[str] = None
    ) -> DriverPayout:
        """
        Persist the payout for a completed trip.

        The existence check gives a clean error for the common case; the
        UNIQUE(trip_id) constraint settles concurrent callers that both
        passed it.

        Raises:
            ResourceNotFoundError: Trip missing
            InvalidStateError: Trip is not COMPLETED
            AlreadyExistsError: A payout already exists for the trip
        """
        async with audited_unit(db, AuditAction.DRIVER_PAYOUT_CREATED, actor_id=actor_id,
                                actor_username=actor_username, entity_type="trip", entity_id=trip_id):
            trip = await get_trip_fresh(db, trip_id)
            if trip.status != TripStatus.COMPLETED:
                raise InvalidStateError(
                    f"Trip {trip_id} is not COMPLETED. Current status: {trip.status.value}",
                    details={"trip_id": trip_id, "trip_status": trip.status.value}
                )

            existing = await db.execute(select(DriverPayout.id).where(DriverPayout.trip_id == trip_id))
            existing_id = existing.scalar_one_or_none()
            if existing_id is not None:
                raise AlreadyExistsError(
                    f"A payout already exists for trip {trip_id}",
                    details={"trip_id": trip_id, "payout_id": existing_id}
                )

            calculation = await PayoutService.calculate_driver_payout(db, trip_id)

            payout = DriverPayout(
                trip_id=trip_id,
                driver_id=calculation.driver_id,
                total_received=calculation.total_received,
                service_fee=calculation.service_fee,
                late_cancellation_penalty=calculation.late_cancellation_penalty,
                late_cancellation_count=calculation.late_cancellation_count,
                payout_amount=calculation.payout_amount,
                currency=calculation.currency,
                status=calculation.status,
                notes=calculation.notes()
            )
            db.add(payout)
            try:
                await db.flush()
            except IntegrityError:
                raise AlreadyExistsError(
                    f"A payout already exists for trip {trip_id}",
                    details={"trip_id": trip_id}
                )

            await log_event(
                db,
                action=AuditAction.DRIVER_PAYOUT_CREATED,
                actor_id=actor_id,
                actor_username=actor_username,
                entity_type="driver_payout",
                entity_id=payout.id,
                metadata={
                    "trip_id": trip_id,
                    "total_received": money_to_json(calculation.total_received),
                    "service_fee": money_to_json(calculation.service_fee),
                    "late_cancellation_penalty": money_to_json(calculation.late_cancellation_penalty),
                    "payout_amount": money_to_json(calculation.payout_amount),
                    "status": calculation.status.value,
                }
            )
            await db.commit()
            await db.refresh(payout)

        logger.info(
            "Payout %s created for trip %s: %s %s (%s)",
            payout.id, trip_id, calculation.payout_amount, calculation.currency, calculation.status.value
        )
        notify_user(
            calculation.driver_id,
            "Payout scheduled" if calculation.status == PayoutStatus.PENDING else "Payout on hold",
            f"Your payout for trip {trip_id} is {calculation.payout_amount} {calculation.currency}.",
            link=f"/trips/{trip_id}",
            type=NotificationType.BILLING_UPDATE
        )
        return payout
