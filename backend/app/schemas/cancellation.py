"""
Cancellation and refund schemas.
"""

from pydantic import BaseModel, Field
from typing import List, Optional
from decimal import Decimal

from backend.app.schemas.reservation import ReservationResponse
from backend.app.schemas.trip import TripResponse


class CancelRequest(BaseModel):
    """Schema for a cancellation request."""
    reason: str = Field(..., min_length=3, max_length=500)


class CancellationResponse(BaseModel):
    id: int
    cancelled_by: str
    reason: str
    hours_before_departure: float
    refund_percentage: Optional[int]
    reservation_id: Optional[int]
    trip_id: Optional[int]

    class Config:
        from_attributes = True


class RefundResponse(BaseModel):
    id: int
    payment_id: int
    refund_amount: Decimal
    driver_compensation: Decimal
    service_fee_retained: Decimal
    refund_type: str
    status: str

    class Config:
        from_attributes = True


class ReservationCancellationResponse(BaseModel):
    """Outcome of a passenger cancellation."""
    reservation: ReservationResponse
    cancellation: CancellationResponse
    refund: Optional[RefundResponse] = None

    class Config:
        from_attributes = True


class TripCancellationResponse(BaseModel):
    """Outcome of a driver cancellation."""
    trip: TripResponse
    cancellation: CancellationResponse
    affected_count: int
    refunds: List[RefundResponse] = []

    class Config:
        from_attributes = True
