"""
Trip completion sweep.

Finds ACTIVE trips whose estimated arrival (plus buffer) has passed and
settles each one independently:

- no CONFIRMED passenger -> system cancellation
- otherwise -> trip COMPLETED, its APPROVED/CONFIRMED reservations COMPLETED,
  then a best-effort payout that is parked in the DLQ when it fails.

Trips are processed concurrently, each in its own session, and the batch
always runs to the end: one trip's failure is counted, never raised.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import or_, select

from backend.app.core.config import settings
from backend.app.core.utils import utcnow
from backend.app.db.session import get_session_factory
from backend.app.domain.reservations.reservation_service import ReservationService
from backend.app.domain.reservations.transitions import transition_trip
from backend.app.domain.settlement.cancellation_service import CancellationCalculator
from backend.app.domain.settlement.payout_service import PayoutService
from backend.app.domain.settlement.policy import calculate_trip_completion_time
from backend.app.models.notification import NotificationType
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import ReservationStatus, TripStatus
from backend.app.services.audit import AuditAction, audited_unit, log_event
from backend.app.services.dead_letter import CREATE_DRIVER_PAYOUT_TASK, record_dead_letter
from backend.app.services.notification_service import notify_user
from backend.app.services.seat_inventory import count_reservations_in_status

logger = logging.getLogger(__name__)

COMPLETED = "completed"
CANCELLED = "cancelled"

SYSTEM_CANCELLATION_REASON = "Trip expired without confirmed passengers"


@dataclass
class SchedulerSummary:
    processed: int = 0
    completed: int = 0
    cancelled: int = 0
    failed: int = 0
    skipped: int = 0
    completed_trip_ids: List[int] = field(default_factory=list)
    cancelled_trip_ids: List[int] = field(default_factory=list)
    failed_trip_ids: List[int] = field(default_factory=list)
    skipped_trip_ids: List[int] = field(default_factory=list)
    payouts_created: int = 0
    payouts_failed: int = 0


@dataclass
class TripOutcome:
    outcome: str
    payout_created: bool = False


async def find_expired_trips(db: AsyncSession, now: datetime) -> Tuple[List[int], List[int]]:
    """
    Returns:
        (eligible trip ids, skipped trip ids). Skipped trips have no usable
        duration and are never completed or cancelled automatically.
    """
    # No trip can finish earlier than departure + minimum duration + buffer
    earliest_departure = now - timedelta(
        seconds=settings.min_trip_duration_seconds + settings.completion_buffer_seconds
    )
    result = await db.execute(
        select(Trip.id, Trip.departure_time, Trip.duration_seconds)
        .where(
            Trip.status == TripStatus.ACTIVE,
            Trip.departure_time <= earliest_departure,
            Trip.duration_seconds > 0
        )
        .order_by(Trip.departure_time, Trip.id)
    )
    eligible = [
        trip_id for trip_id, departure_time, duration_seconds in result.all()
        if calculate_trip_completion_time(departure_time, duration_seconds) <= now
    ]

    # Reported from departure on: these never become eligible by waiting
    result = await db.execute(
        select(Trip.id)
        .where(
            Trip.status == TripStatus.ACTIVE,
            Trip.departure_time <= now,
            or_(Trip.duration_seconds.is_(None), Trip.duration_seconds <= 0)
        )
        .order_by(Trip.departure_time, Trip.id)
    )
    skipped = list(result.scalars().all())

    return eligible, skipped


async def _complete_trip(db: AsyncSession, trip_id: int, now: datetime) -> int:
    async with audited_unit(db, AuditAction.TRIP_COMPLETED, entity_type="trip", entity_id=trip_id):
        await transition_trip(db, trip_id, [TripStatus.ACTIVE], TripStatus.COMPLETED, completed_at=now)
        completed_reservations = await ReservationService.complete_trip_reservations(db, trip_id)

        await log_event(
            db,
            action=AuditAction.TRIP_COMPLETED,
            entity_type="trip",
            entity_id=trip_id,
            metadata={"completed_reservations": completed_reservations}
        )
        await db.commit()

    return completed_reservations


async def settle_trip(session_factory, trip_id: int, now: datetime) -> TripOutcome:
    """Complete or system-cancel one expired trip, then try to create its payout."""
    async with session_factory() as session:
        confirmed = await count_reservations_in_status(session, trip_id, [ReservationStatus.CONFIRMED])

        if confirmed == 0:
            await CancellationCalculator.cancel_trip_by_system(
                session, trip_id, reason=SYSTEM_CANCELLATION_REASON, now=now
            )
            return TripOutcome(CANCELLED)

        completed_reservations = await _complete_trip(session, trip_id, now)
        trip = await session.get(Trip, trip_id)
        driver_id = trip.driver_id

    logger.info("Trip %s completed with %d reservation(s)", trip_id, completed_reservations)
    notify_user(
        driver_id,
        "Trip completed",
        "Your trip was marked as completed. Your payout is being prepared.",
        link=f"/trips/{trip_id}",
        type=NotificationType.TRIP_UPDATE
    )

    # Best effort: the completion above is already committed and stays so
    try:
        async with session_factory() as session:
            await PayoutService.create_driver_payout(session, trip_id)
    except Exception as e:
        logger.exception("Payout creation failed for completed trip %s", trip_id)
        await record_dead_letter(
            CREATE_DRIVER_PAYOUT_TASK, e, payload={"trip_id": trip_id}, session_factory=session_factory
        )
        return TripOutcome(COMPLETED, payout_created=False)

    return TripOutcome(COMPLETED, payout_created=True)


async def complete_expired_trips(
    now: Optional[datetime] = None,
    session_factory=None,
    max_concurrency: Optional[int] = None
) -> SchedulerSummary:
    """
    Settle every expired ACTIVE trip.

    Args:
        now: Clock override (defaults to the current UTC instant)
        session_factory: Factory for per-trip sessions (defaults to the app's)
        max_concurrency: Upper bound on trips settled at once

    Returns:
        SchedulerSummary with processed/completed/cancelled/failed/skipped counts
    """
    now = now or utcnow()
    session_factory = session_factory or get_session_factory()
    max_concurrency = max_concurrency or settings.scheduler_max_concurrency

    async with session_factory() as session:
        eligible, skipped = await find_expired_trips(session, now)

    summary = SchedulerSummary(skipped=len(skipped), skipped_trip_ids=skipped)
    if skipped:
        logger.warning("Skipping %d ACTIVE trip(s) without a valid duration: %s", len(skipped), skipped)

    semaphore = asyncio.Semaphore(max_concurrency)

    async def guarded(trip_id: int) -> TripOutcome:
        async with semaphore:
            return await settle_trip(session_factory, trip_id, now)

    results = await asyncio.gather(*(guarded(trip_id) for trip_id in eligible), return_exceptions=True)

    for trip_id, result in zip(eligible, results):
        summary.processed += 1
        if isinstance(result, BaseException):
            summary.failed += 1
            summary.failed_trip_ids.append(trip_id)
            logger.error("Failed to settle trip %s: %r", trip_id, result, exc_info=result)
        elif result.outcome == CANCELLED:
            summary.cancelled += 1
            summary.cancelled_trip_ids.append(trip_id)
        else:
            summary.completed += 1
            summary.completed_trip_ids.append(trip_id)
            if result.payout_created:
                summary.payouts_created += 1
            else:
                summary.payouts_failed += 1

    logger.info(
        "Trip completion sweep: processed=%d completed=%d cancelled=%d failed=%d skipped=%d",
        summary.processed, summary.completed, summary.cancelled, summary.failed, summary.skipped
    )
    return summary
