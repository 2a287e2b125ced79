"""
Audit logging service for settlement actions.

Successful actions are written inside the caller's unit of work, so the
audit row commits or rolls back together with the money movement it
describes. Failed actions are written from a fresh session because the
caller's unit is about to be rolled back.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from sqlalchemy.exc import SQLAlchemyError

from backend.app.db.session import get_session_factory
from backend.app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"


class AuditStatus:
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    RESERVATION_CREATED = "RESERVATION_CREATED"
    RESERVATION_APPROVED = "RESERVATION_APPROVED"
    RESERVATION_REJECTED = "RESERVATION_REJECTED"
    RESERVATION_WAITLISTED = "RESERVATION_WAITLISTED"
    RESERVATION_EXPIRED = "RESERVATION_EXPIRED"
    RESERVATION_CANCELLED = "RESERVATION_CANCELLED"

    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"

    TRIP_CANCELLED_BY_DRIVER = "TRIP_CANCELLED_BY_DRIVER"
    TRIP_CANCELLED_BY_SYSTEM = "TRIP_CANCELLED_BY_SYSTEM"
    TRIP_COMPLETED = "TRIP_COMPLETED"

    DRIVER_PAYOUT_CREATED = "DRIVER_PAYOUT_CREATED"
    DLQ_RETRIED = "DLQ_RETRIED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
    status: str = AuditStatus.SUCCESS,
    commit: bool = False
) -> AuditLog:
    """
    Record a settlement event.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of the user performing the action (None for the scheduler)
        actor_username: Username of actor, ``SYSTEM`` for scheduler actions
        entity_type: Kind of entity touched (``trip``, ``reservation``...)
        entity_id: ID of the entity touched
        metadata: Additional context as JSON
        status: SUCCESS or FAILED
        commit: Commit immediately instead of leaving it to the caller's unit

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_username=actor_username or (SYSTEM_ACTOR if actor_id is None else None),
        action=action,
        status=status,
        entity_type=entity_type,
        entity_id=entity_id,
        meta_data=metadata
    )

    db.add(audit_log)
    if commit:
        await db.commit()
        await db.refresh(audit_log)
    else:
        await db.flush()

    return audit_log


async def log_failed_event(
    action: str,
    error: Exception,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> None:
    """
    Record a FAILED event in its own transaction.

    Never raises: a broken audit sink must not replace the domain error
    the caller is about to report.
    """
    details = dict(metadata or {})
    details["error"] = str(error)
    details["error_type"] = type(error).__name__
    error_code = getattr(error, "error_code", None)
    if error_code:
        details["error_code"] = error_code

    try:
        async with get_session_factory()() as session:
            await log_event(
                session,
                action=action,
                actor_id=actor_id,
                actor_username=actor_username,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=details,
                status=AuditStatus.FAILED,
                commit=True
            )
    except SQLAlchemyError:
        logger.exception("Could not record FAILED audit event %s for %s %s", action, entity_type, entity_id)


async def get_audit_trail(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)

    if entity_id is not None:
        query = query.where(AuditLog.entity_id == entity_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()


@asynccontextmanager
async def audited_unit(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None
):
    """
    Wrap one unit of work: on any error roll the session back, record a
    FAILED audit event and re-raise.

    Usage:
        async with audited_unit(db, AuditAction.RESERVATION_APPROVED, actor_id=driver_id,
                                entity_type="reservation", entity_id=reservation_id):
            ...
            await db.commit()
    """
    try:
        yield
    except Exception as e:
        await db.rollback()
        logger.info("%s failed for %s %s: %s", action, entity_type, entity_id, e)
        await log_failed_event(
            action,
            e,
            actor_id=actor_id,
            actor_username=actor_username,
            entity_type=entity_type,
            entity_id=entity_id
        )
        raise
