"""
Billing enumerations: payments, refunds, payouts and fee policies.
"""

import enum


class PaymentStatus(str, enum.Enum):
    """Payment status enumeration."""
    PENDING = "PENDING"  # Created on approval, waiting for the transfer
    COMPLETED = "COMPLETED"  # Transfer verified
    FAILED = "FAILED"  # Proof rejected by an admin, the passenger may send it again
    REFUNDED = "REFUNDED"  # Terminal, a Refund record exists
    CANCELLED = "CANCELLED"  # Reservation closed before it was paid


# Still awaiting a verified transfer
UNPAID_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.FAILED)


class RefundType(str, enum.Enum):
    """Refund type enumeration."""
    FULL_REFUND = "FULL_REFUND"
    PARTIAL_REFUND_75 = "PARTIAL_REFUND_75"
    PARTIAL_REFUND_50 = "PARTIAL_REFUND_50"


class RefundStatus(str, enum.Enum):
    """Refund status enumeration."""
    PROCESSING = "PROCESSING"  # Recorded, transfer back to the passenger pending
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PayoutStatus(str, enum.Enum):
    """Driver payout status enumeration."""
    PENDING = "PENDING"  # Amount > 0, waiting to be transferred
    ON_HOLD = "ON_HOLD"  # Amount == 0, kept for the record


class FeeType(str, enum.Enum):
    """How a fee policy rate is applied."""
    PERCENTAGE = "PERCENTAGE"  # rate % of the amount received
    FIXED_AMOUNT = "FIXED_AMOUNT"  # rate, flat
    PER_SEAT = "PER_SEAT"  # rate x paying passengers
