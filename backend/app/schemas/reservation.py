"""
Reservation and payment schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal


class ReservationCreate(BaseModel):
    """Schema for requesting seats on a trip."""
    seats: int = Field(1, ge=1, description="Number of seats to reserve")


class PaymentRejectRequest(BaseModel):
    """Why an admin could not verify a transfer."""
    reason: str = Field(..., min_length=10, max_length=500)


class PaymentResponse(BaseModel):
    """Schema for displaying a payment."""
    id: int
    reservation_id: int
    status: str
    total_amount: Decimal
    service_fee: Decimal
    currency: str
    completed_at: Optional[datetime]
    failure_reason: Optional[str] = None

    class Config:
        from_attributes = True


class ReservationResponse(BaseModel):
    """Schema for reservation response."""
    id: int
    trip_id: int
    passenger_id: int
    seats_reserved: int
    total_price: Decimal
    reservation_status: str
    approved_at: Optional[datetime]
    created_at: datetime
    payment: Optional[PaymentResponse] = None

    class Config:
        from_attributes = True
