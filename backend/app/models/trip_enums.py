"""
Trip and reservation enumerations.
"""

import enum


class TripStatus(str, enum.Enum):
    """Trip status enumeration."""
    PENDING = "PENDING"  # Published, not yet open for automatic completion
    ACTIVE = "ACTIVE"  # Open; the scheduler completes it once its window elapses
    COMPLETED = "COMPLETED"  # Terminal
    CANCELLED = "CANCELLED"  # Terminal


class ReservationStatus(str, enum.Enum):
    """Reservation (seat claim) status enumeration."""
    PENDING_APPROVAL = "PENDING_APPROVAL"
    WAITLISTED = "WAITLISTED"
    APPROVED = "APPROVED"  # Seats held, payment pending
    CONFIRMED = "CONFIRMED"  # Paid
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    CANCELLED_EARLY = "CANCELLED_EARLY"  # Passenger, > 24h before departure
    CANCELLED_MEDIUM = "CANCELLED_MEDIUM"  # Passenger, 12h - 24h
    CANCELLED_LATE = "CANCELLED_LATE"  # Passenger, < 12h
    CANCELLED_BY_DRIVER_EARLY = "CANCELLED_BY_DRIVER_EARLY"  # Driver, > 48h
    CANCELLED_BY_DRIVER_LATE = "CANCELLED_BY_DRIVER_LATE"  # Driver (or system), <= 48h
    NO_SHOW = "NO_SHOW"
    EXPIRED = "EXPIRED"  # Approved but never paid


class CancelledBy(str, enum.Enum):
    """Who initiated a cancellation."""
    PASSENGER = "PASSENGER"
    DRIVER = "DRIVER"
    SYSTEM = "SYSTEM"
