"""
Reservation database model.

A passenger's claim on one or more seats of a trip.
"""

from sqlalchemy import Column, Integer, ForeignKey, DateTime, Enum, Numeric, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.app.core.utils import utcnow
from backend.app.db.session import Base
from backend.app.models.trip_enums import ReservationStatus


class Reservation(Base):
    """
    Reservation model.

    ``total_price`` is the trip-price portion (price per seat x seats);
    the platform's service fee lives on the Payment.
    Status moves one way along the graph in domain/reservations/state_machine.py.
    """
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("seats_reserved >= 1", name="ck_reservations_seats_positive"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    trip_id = Column(Integer, ForeignKey('trips.id'), nullable=False, index=True)
    passenger_id = Column(Integer, nullable=False, index=True)

    seats_reserved = Column(Integer, nullable=False, default=1)
    total_price = Column(Numeric(12, 2), nullable=False)

    reservation_status = Column(
        Enum(ReservationStatus),
        default=ReservationStatus.PENDING_APPROVAL,
        nullable=False,
        index=True
    )
    approved_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps (created_at drives the cancellation grace rule, so it is set app-side)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    trip = relationship("Trip", back_populates="reservations")
    payment = relationship("Payment", back_populates="reservation", uselist=False)

    def __repr__(self):
        return f"<Reservation(id={self.id}, trip_id={self.trip_id}, status='{self.reservation_status.value}')>"
