"""
Refund database model.
"""

from sqlalchemy import Column, Integer, ForeignKey, DateTime, Enum, Numeric
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.billing_enums import RefundType, RefundStatus


class Refund(Base):
    """
    Refund model.

    Splits the trip-price portion of a completed payment between the
    passenger (refund_amount) and the driver (driver_compensation).
    service_fee_retained always equals the payment's original service fee.
    """
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    payment_id = Column(Integer, ForeignKey('payments.id'), nullable=False, unique=True, index=True)

    refund_amount = Column(Numeric(12, 2), nullable=False)
    driver_compensation = Column(Numeric(12, 2), nullable=False)
    service_fee_retained = Column(Numeric(12, 2), nullable=False)

    refund_type = Column(Enum(RefundType), nullable=False)
    status = Column(Enum(RefundStatus), default=RefundStatus.PROCESSING, nullable=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    payment = relationship("Payment", back_populates="refund")

    def __repr__(self):
        return f"<Refund(id={self.id}, payment_id={self.payment_id}, amount={self.refund_amount})>"
