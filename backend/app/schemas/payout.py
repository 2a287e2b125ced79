"""
Driver payout schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import Optional


class PayoutCalculationResponse(BaseModel):
    """Payout preview, nothing persisted."""
    trip_id: int
    driver_id: int
    total_received: Decimal
    service_fee: Decimal
    late_cancellation_penalty: Decimal
    late_cancellation_count: int
    payout_amount: Decimal
    valid_passengers_count: int
    currency: str
    status: str

    class Config:
        from_attributes = True


class DriverPayoutResponse(BaseModel):
    id: int
    trip_id: int
    driver_id: int
    total_received: Decimal
    service_fee: Decimal
    late_cancellation_penalty: Decimal
    late_cancellation_count: int
    payout_amount: Decimal
    currency: str
    status: str
    notes: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True
