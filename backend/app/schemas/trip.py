"""
Trip schemas.
"""

from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from decimal import Decimal


class TripResponse(BaseModel):
    """Schema for trip response."""
    id: int
    driver_id: int
    price_per_seat: Decimal
    total_seats: int
    remaining_seats: int
    is_full: bool
    departure_time: datetime
    duration_seconds: Optional[int]
    status: str
    service_fee: Optional[Decimal]
    fee_policy_id: Optional[int]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    class Config:
        from_attributes = True
