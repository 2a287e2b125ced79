"""
Cancellation database model.

Append-only fact record, one per cancellation event.
"""

from sqlalchemy import Column, Integer, Float, ForeignKey, DateTime, Enum, Text
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.trip_enums import CancelledBy


class Cancellation(Base):
    """
    Cancellation model.

    Passenger cancellations reference a reservation; driver and system
    cancellations reference the whole trip. NO updates or deletions.
    """
    __tablename__ = "cancellations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    cancelled_by = Column(Enum(CancelledBy), nullable=False, index=True)
    reason = Column(Text, nullable=False)

    # Negative when recorded after departure
    hours_before_departure = Column(Float, nullable=False)
    # NULL for trip-level driver cancellations (not applicable)
    refund_percentage = Column(Integer, nullable=True)

    reservation_id = Column(Integer, ForeignKey('reservations.id'), nullable=True, index=True)
    trip_id = Column(Integer, ForeignKey('trips.id'), nullable=True, index=True)

    # Immutable - no updated_at
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Cancellation(id={self.id}, by='{self.cancelled_by.value}', refund={self.refund_percentage})>"
