"""
Money & Policy Primitives.

Pure functions used by the reservation, cancellation, payout and
scheduler flows. No database access, no clock reads unless a caller
leaves ``now`` unset.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from backend.app.core.config import settings
from backend.app.core.utils import ZERO, as_utc, to_money
from backend.app.models.billing_enums import FeeType, RefundType
from backend.app.models.trip_enums import ReservationStatus

GRACE_PERIOD_HOURS = 1
GRACE_WINDOW_HOURS = 24
EARLY_CANCELLATION_HOURS = 24
MEDIUM_CANCELLATION_HOURS = 12
DRIVER_EARLY_CANCELLATION_HOURS = 48


@dataclass(frozen=True)
class RefundTier:
    status: ReservationStatus
    refund_percentage: int
    refund_type: RefundType


@dataclass(frozen=True)
class RefundAmounts:
    refund_amount: Decimal
    driver_compensation: Decimal
    service_fee_retained: Decimal


FULL_REFUND_TIER = RefundTier(ReservationStatus.CANCELLED_EARLY, 100, RefundType.FULL_REFUND)
MEDIUM_REFUND_TIER = RefundTier(ReservationStatus.CANCELLED_MEDIUM, 75, RefundType.PARTIAL_REFUND_75)
LATE_REFUND_TIER = RefundTier(ReservationStatus.CANCELLED_LATE, 50, RefundType.PARTIAL_REFUND_50)


def hours_between(start: datetime, end: datetime) -> float:
    """Signed hours from ``start`` to ``end`` (negative when ``end`` is earlier)."""
    return (as_utc(end) - as_utc(start)).total_seconds() / 3600


def compute_passenger_refund_tier(
    departure_time: datetime,
    cancelled_at: datetime,
    reservation_created_at: datetime,
    now: Optional[datetime] = None
) -> RefundTier:
    """
    Resolve the refund tier for a passenger-initiated cancellation.

    Rules, evaluated in order:
    1. Grace override: booking younger than 24h (at ``now``) and cancelled
       within 1h of booking -> 100%, regardless of departure proximity.
    2. Hours before departure: >24 -> 100%, 12..24 inclusive -> 75%, <12 -> 50%.

    ``now`` defaults to ``cancelled_at``.
    """
    if now is None:
        now = cancelled_at

    booking_age = hours_between(reservation_created_at, now)
    cancelled_after = hours_between(reservation_created_at, cancelled_at)
    if booking_age < GRACE_WINDOW_HOURS and cancelled_after < GRACE_PERIOD_HOURS:
        return FULL_REFUND_TIER

    hours_before_departure = hours_between(cancelled_at, departure_time)
    if hours_before_departure > EARLY_CANCELLATION_HOURS:
        return FULL_REFUND_TIER
    if hours_before_departure >= MEDIUM_CANCELLATION_HOURS:
        return MEDIUM_REFUND_TIER
    return LATE_REFUND_TIER


def compute_driver_cancellation_tier(departure_time: datetime, cancelled_at: datetime) -> ReservationStatus:
    """More than 48h before departure is an early driver cancellation, anything else is late."""
    if hours_between(cancelled_at, departure_time) > DRIVER_EARLY_CANCELLATION_HOURS:
        return ReservationStatus.CANCELLED_BY_DRIVER_EARLY
    return ReservationStatus.CANCELLED_BY_DRIVER_LATE


def compute_refund_amounts(trip_price_portion: Any, service_fee: Any, refund_percentage: int) -> RefundAmounts:
    """
    Split the trip-price portion between passenger and driver.

    The service fee is never part of the refund: it is always retained
    in full. Compensation is derived by subtraction so the two parts add
    up to the portion exactly after rounding.
    """
    if not 0 <= refund_percentage <= 100:
        raise ValueError(f"refund_percentage must be within 0..100, got {refund_percentage}")

    portion = to_money(trip_price_portion)
    refund_amount = to_money(portion * Decimal(refund_percentage) / Decimal(100))
    return RefundAmounts(
        refund_amount=refund_amount,
        driver_compensation=portion - refund_amount,
        service_fee_retained=to_money(service_fee),
    )


def _raw_policy_fee(fee_policy: Any, base_amount: Decimal, count: int) -> Decimal:
    rate = to_money(fee_policy.rate)
    if fee_policy.fee_type == FeeType.PERCENTAGE:
        return to_money(base_amount * rate / Decimal(100))
    if fee_policy.fee_type == FeeType.FIXED_AMOUNT:
        return rate
    if fee_policy.fee_type == FeeType.PER_SEAT:
        return to_money(rate * count)
    raise ValueError(f"Unsupported fee type: {fee_policy.fee_type}")


def compute_service_fee(
    total_received: Any,
    valid_passenger_count: int,
    fee_policy: Any = None,
    flat_fee: Any = None
) -> Decimal:
    """
    Trip-level platform fee used by the payout calculator.

    Policy fee first (clamped below the minimum, then above the maximum),
    else the trip's flat fee, else zero.
    """
    if fee_policy is not None:
        fee = _raw_policy_fee(fee_policy, to_money(total_received), valid_passenger_count)
        if fee_policy.minimum_fee is not None and fee < to_money(fee_policy.minimum_fee):
            fee = to_money(fee_policy.minimum_fee)
        if fee_policy.maximum_fee is not None and fee > to_money(fee_policy.maximum_fee):
            fee = to_money(fee_policy.maximum_fee)
        return fee

    if flat_fee is not None:
        return to_money(flat_fee)

    return ZERO


def compute_payment_service_fee(
    total_price: Any,
    seats: int,
    fee_policy: Any = None,
    default_percentage: Optional[float] = None
) -> Decimal:
    """Fee component of the PENDING payment created when a reservation is approved."""
    total_price = to_money(total_price)
    if fee_policy is not None:
        return _raw_policy_fee(fee_policy, total_price, seats)

    if default_percentage is None:
        default_percentage = settings.default_service_fee_percentage
    return to_money(total_price * Decimal(str(default_percentage)) / Decimal(100))


def calculate_trip_completion_time(
    departure_time: datetime,
    duration_seconds: int,
    buffer_seconds: Optional[int] = None
) -> datetime:
    """
    Instant after which an ACTIVE trip is considered finished.

    departure + clamp(duration, min, max) + buffer.

    Raises:
        ValueError: If duration is missing or not positive.
    """
    if duration_seconds is None or duration_seconds <= 0:
        raise ValueError(f"Trip duration must be positive, got {duration_seconds}")

    if buffer_seconds is None:
        buffer_seconds = settings.completion_buffer_seconds

    duration = max(settings.min_trip_duration_seconds, min(duration_seconds, settings.max_trip_duration_seconds))
    return as_utc(departure_time) + timedelta(seconds=duration + buffer_seconds)
