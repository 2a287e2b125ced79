"""
Payment database model.

One payment per reservation, created PENDING when the driver approves.
"""

from sqlalchemy import Column, Integer, ForeignKey, DateTime, Enum, Numeric, String, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.billing_enums import PaymentStatus


class Payment(Base):
    """
    Payment model.

    ``total_amount`` = reservation.total_price + ``service_fee``.
    The service fee is the platform's cut and is never refunded.
    """
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("service_fee <= total_amount", name="ck_payments_fee_within_total"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    reservation_id = Column(Integer, ForeignKey('reservations.id'), nullable=False, unique=True, index=True)

    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    service_fee = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    # Verification
    verified_by_admin_id = Column(Integer, nullable=True)
    failure_reason = Column(String(500), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    reservation = relationship("Reservation", back_populates="payment")
    refund = relationship("Refund", back_populates="payment", uselist=False)

    def __repr__(self):
        return f"<Payment(id={self.id}, status='{self.status.value}', total={self.total_amount})>"
