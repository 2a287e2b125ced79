"""
Dead letter service.

Best-effort follow-ups that fail after their primary transition has
committed (automatic payout creation after trip completion) are parked
here for an operator to retry.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.exceptions import AlreadyExistsError, InvalidStateError, ResourceNotFoundError
from backend.app.core.utils import utcnow
from backend.app.db.session import get_session_factory
from backend.app.domain.settlement.payout_service import PayoutService
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)

CREATE_DRIVER_PAYOUT_TASK = "create_driver_payout"
MAX_RETRIES = 5


async def record_dead_letter(
    task_name: str,
    error: Exception,
    payload: Optional[Dict[str, Any]] = None,
    session_factory=None
) -> Optional[int]:
    """
    Park a failed task. Never raises; returns the DLQ id or None if even
    that write failed (the failure is then only in the log).
    """
    session_factory = session_factory or get_session_factory()
    try:
        async with session_factory() as session:
            item = DeadLetterQueue(
                task_name=task_name,
                error_message=f"{type(error).__name__}: {error}",
                payload=payload,
                status=DLQStatus.FAILED
            )
            session.add(item)
            await session.commit()
            logger.warning("Task %s parked in DLQ as item %s", task_name, item.id)
            return item.id
    except SQLAlchemyError:
        logger.exception("Could not write DLQ entry for task %s (payload=%s)", task_name, payload)
        return None


async def retry_dead_letter(
    db: AsyncSession,
    dlq_id: int,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None
) -> DeadLetterQueue:
    """
    Re-run a parked task.

    A payout that already exists means an earlier attempt got through, so
    the item is closed as PROCESSED. Other failures bump ``retry_count``;
    after MAX_RETRIES the item is ARCHIVED.

    Raises:
        ResourceNotFoundError: Unknown DLQ item
        InvalidStateError: Item already processed/archived, or an unknown task
    """
    item = await db.get(DeadLetterQueue, dlq_id, populate_existing=True)
    if not item:
        raise ResourceNotFoundError("DLQ item", dlq_id)

    if item.status in (DLQStatus.PROCESSED, DLQStatus.ARCHIVED):
        raise InvalidStateError(
            f"DLQ item {dlq_id} is already {item.status.value}",
            details={"dlq_id": dlq_id, "status": item.status.value}
        )

    if item.task_name != CREATE_DRIVER_PAYOUT_TASK:
        raise InvalidStateError(f"No retry handler for task {item.task_name}", details={"dlq_id": dlq_id})

    trip_id = (item.payload or {}).get("trip_id")

    item.status = DLQStatus.RETRYING
    item.retry_count = (item.retry_count or 0) + 1
    item.last_retry_at = utcnow()
    await db.commit()

    error = None
    async with get_session_factory()() as session:
        try:
            await PayoutService.create_driver_payout(
                session, trip_id, actor_id=actor_id, actor_username=actor_username
            )
        except AlreadyExistsError:
            logger.info("Payout for trip %s already exists, closing DLQ item %s", trip_id, dlq_id)
        except Exception as e:
            logger.exception("Retry of DLQ item %s failed", dlq_id)
            error = e

    if error is None:
        item.status = DLQStatus.PROCESSED
    else:
        item.error_message = f"{type(error).__name__}: {error}"
        item.status = DLQStatus.ARCHIVED if item.retry_count >= MAX_RETRIES else DLQStatus.FAILED

    await log_event(
        db,
        action=AuditAction.DLQ_RETRIED,
        actor_id=actor_id,
        actor_username=actor_username,
        entity_type="dead_letter",
        entity_id=dlq_id,
        metadata={"task_name": item.task_name, "trip_id": trip_id, "result": item.status.value}
    )
    await db.commit()
    return item
