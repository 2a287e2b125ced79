"""
Trip database model.

A trip is one journey offered by a driver with a fixed number of seats.
"""

from sqlalchemy import Column, Integer, ForeignKey, DateTime, Enum, Numeric, Boolean, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.trip_enums import TripStatus


class Trip(Base):
    """
    Trip model.

    Seat inventory lives in ``remaining_seats`` and is only ever changed
    through guarded UPDATE statements (see services/seat_inventory.py).
    Trips are never deleted: COMPLETED and CANCELLED are terminal states.
    """
    __tablename__ = "trips"
    __table_args__ = (
        CheckConstraint("remaining_seats >= 0", name="ck_trips_remaining_seats_non_negative"),
        CheckConstraint("remaining_seats <= total_seats", name="ck_trips_remaining_seats_capacity"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Offering actor (identity is external)
    driver_id = Column(Integer, nullable=False, index=True)

    # Pricing
    price_per_seat = Column(Numeric(12, 2), nullable=False)
    service_fee = Column(Numeric(12, 2), nullable=True)  # flat trip-level fee, fallback when no policy
    fee_policy_id = Column(Integer, ForeignKey('fee_policies.id'), nullable=True, index=True)

    # Schedule
    departure_time = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_seconds = Column(Integer, nullable=True)

    # Inventory
    total_seats = Column(Integer, nullable=False)
    remaining_seats = Column(Integer, nullable=False)
    is_full = Column(Boolean, default=False, nullable=False)

    # Status
    status = Column(Enum(TripStatus), default=TripStatus.ACTIVE, nullable=False, index=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    reservations = relationship("Reservation", back_populates="trip")
    fee_policy = relationship("FeePolicy")

    def __repr__(self):
        return f"<Trip(id={self.id}, status='{self.status.value}', remaining_seats={self.remaining_seats})>"
