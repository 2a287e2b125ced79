"""
Audit Log Database Model.

Tracks every state-changing settlement action so money movement can be
reconstructed after the fact.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model for settlement events.

    Events logged:
    - RESERVATION_CREATED / APPROVED / REJECTED / WAITLISTED / EXPIRED
    - RESERVATION_CANCELLED (passenger)
    - TRIP_CANCELLED_BY_DRIVER / TRIP_CANCELLED_BY_SYSTEM
    - TRIP_COMPLETED
    - DRIVER_PAYOUT_CREATED
    - PAYMENT_CONFIRMED / PAYMENT_REJECTED
    - DLQ_RETRIED

    Failed attempts are recorded with status FAILED in a separate
    transaction so they survive the rollback of the failed unit.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_username = Column(String(100), nullable=True)  # "SYSTEM" for scheduler actions

    # What action was performed
    action = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="SUCCESS", index=True)

    # What entity the action touched
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(Integer, index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', status='{self.status}', entity={self.entity_type}:{self.entity_id})>"
