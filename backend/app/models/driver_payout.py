"""
Driver Payout database model.

Net amount owed to the driver once a trip is completed.
"""

from sqlalchemy import Column, Integer, ForeignKey, DateTime, Enum, Numeric, String, Text
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.billing_enums import PayoutStatus


class DriverPayout(Base):
    """
    Driver Payout model.

    At most one per trip: ``trip_id`` is UNIQUE, so a concurrent second
    insert fails at flush time even if both callers passed the existence check.
    """
    __tablename__ = "driver_payouts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    trip_id = Column(Integer, ForeignKey('trips.id'), nullable=False, unique=True, index=True)
    driver_id = Column(Integer, nullable=False, index=True)

    # Breakdown
    total_received = Column(Numeric(12, 2), nullable=False)
    service_fee = Column(Numeric(12, 2), nullable=False)
    late_cancellation_penalty = Column(Numeric(12, 2), nullable=False)
    late_cancellation_count = Column(Integer, default=0, nullable=False)
    payout_amount = Column(Numeric(12, 2), nullable=False)  # max(0, received - fee - penalty)
    currency = Column(String(3), nullable=False)

    status = Column(Enum(PayoutStatus), nullable=False, index=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<DriverPayout(id={self.id}, trip_id={self.trip_id}, amount={self.payout_amount}, status='{self.status.value}')>"
