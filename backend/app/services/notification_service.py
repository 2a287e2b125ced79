"""
Notification Service.

The engine's ``notify(user_id, title, message, link)`` collaborator.
Delivery is fire-and-forget: ``notify_user`` schedules an asyncio task
after the caller's transaction has committed, and the task persists the
in-app notification in its own session behind a circuit breaker. A
failed delivery is logged and dropped, never retried and never seen by
the caller.
"""

import asyncio
import logging
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update
from typing import Optional, Dict, Any

from backend.app.core.reliability import CircuitOpenError, notification_circuit_breaker
from backend.app.core.utils import utcnow
from backend.app.db.session import get_session_factory
from backend.app.models.notification import Notification, NotificationType

logger = logging.getLogger(__name__)

# Strong references so pending deliveries are not garbage collected mid-flight
_pending_deliveries: set = set()


class NotificationService:

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        user_id: int,
        title: str,
        message: str,
        link: Optional[str] = None,
        type: NotificationType = NotificationType.INFO,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """Create a single notification."""
        notif = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            link=link,
            metadata_payload=metadata
        )
        db.add(notif)
        await db.flush()  # Caller commits
        return notif

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> bool:
        """Mark a notification as read."""
        stmt = update(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).values(
            is_read=True,
            read_at=utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: int) -> int:
        """Mark all notifications for user as read."""
        stmt = update(Notification).where(
            Notification.user_id == user_id,
            Notification.is_read == False
        ).values(
            is_read=True,
            read_at=utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount


async def _persist_notification(
    user_id: int,
    title: str,
    message: str,
    link: Optional[str],
    type: NotificationType,
    metadata: Optional[Dict[str, Any]]
) -> None:
    async with get_session_factory()() as session:
        await NotificationService.create_notification(
            session, user_id, title, message, link=link, type=type, metadata=metadata
        )
        await session.commit()


async def deliver_notification(
    user_id: int,
    title: str,
    message: str,
    link: Optional[str] = None,
    type: NotificationType = NotificationType.INFO,
    metadata: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Deliver one notification. Swallows and logs every failure.

    Returns:
        True if delivered, False otherwise
    """
    try:
        await notification_circuit_breaker.call(
            _persist_notification, user_id, title, message, link, type, metadata
        )
    except CircuitOpenError:
        logger.warning("Notification sender circuit open, dropping '%s' for user %s", title, user_id)
        return False
    except Exception:
        logger.exception("Notification delivery failed for user %s ('%s')", user_id, title)
        return False

    return True


def notify_user(
    user_id: int,
    title: str,
    message: str,
    link: Optional[str] = None,
    type: NotificationType = NotificationType.INFO,
    metadata: Optional[Dict[str, Any]] = None
) -> asyncio.Task:
    """
    Schedule a notification without waiting for it.

    Call only after the unit of work that triggered it has committed.
    """
    task = asyncio.create_task(
        deliver_notification(user_id, title, message, link=link, type=type, metadata=metadata)
    )
    _pending_deliveries.add(task)
    task.add_done_callback(_pending_deliveries.discard)
    return task


async def drain_pending_notifications() -> None:
    """Wait for in-flight deliveries (shutdown hook)."""
    if _pending_deliveries:
        await asyncio.gather(*list(_pending_deliveries), return_exceptions=True)
