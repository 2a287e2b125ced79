"""
Fee Policy database model.

Defines how the platform's service fee is computed for a trip.
"""

from sqlalchemy import Column, Integer, String, Numeric, DateTime, Boolean, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.billing_enums import FeeType


class FeePolicy(Base):
    """
    Fee Policy model.

    ``rate`` is interpreted according to ``fee_type``; the optional bounds
    clamp the trip-level fee computed at payout time.
    """
    __tablename__ = "fee_policies"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    name = Column(String(100), nullable=False)
    fee_type = Column(Enum(FeeType), nullable=False)
    rate = Column(Numeric(12, 2), nullable=False)
    minimum_fee = Column(Numeric(12, 2), nullable=True)
    maximum_fee = Column(Numeric(12, 2), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<FeePolicy(id={self.id}, name='{self.name}', type='{self.fee_type.value}', rate={self.rate})>"
