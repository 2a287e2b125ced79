"""
Settlement scheduler.

One tick runs the three time-driven sweeps in order:
1. reject pending requests the driver never answered before departure
2. expire approved reservations that were never paid
3. complete (or system-cancel) trips whose arrival window has passed

A redis lock keeps two app instances from running a tick at the same
time. The loop is started by the app lifespan when ``enable_scheduler``
is set; ops can also trigger the completion sweep by hand.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from redis.exceptions import RedisError

from backend.app.core.config import settings
from backend.app.core.exceptions import DependencyUnavailableError
from backend.app.core.redis_client import acquire_lock, redis_client, release_lock
from backend.app.core.utils import utcnow
from backend.app.domain.reservations.reservation_service import ReservationService
from backend.app.services.trip_completion import SchedulerSummary, complete_expired_trips

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    started_at: datetime
    rejected_reservation_ids: List[int] = field(default_factory=list)
    expired_reservation_ids: List[int] = field(default_factory=list)
    completion: SchedulerSummary = field(default_factory=SchedulerSummary)


async def run_scheduler_tick(
    now: Optional[datetime] = None,
    redis=None,
    session_factory=None
) -> Optional[TickReport]:
    """
    Run one scheduler tick under the distributed lock.

    Returns:
        TickReport, or None when another instance holds the lock

    Raises:
        DependencyUnavailableError: If redis cannot be reached
    """
    now = now or utcnow()
    client = redis if redis is not None else redis_client

    try:
        token = await acquire_lock(client, settings.scheduler_lock_key, settings.scheduler_lock_ttl_seconds)
    except RedisError as e:
        raise DependencyUnavailableError("redis", f"Scheduler lock unavailable: {e}")

    if token is None:
        logger.info("Scheduler tick skipped: lock %s is held elsewhere", settings.scheduler_lock_key)
        return None

    report = TickReport(started_at=now)
    try:
        report.rejected_reservation_ids = await ReservationService.reject_stale_pending_reservations(
            now=now, session_factory=session_factory
        )
        report.expired_reservation_ids = await ReservationService.expire_unpaid_reservations(
            now=now, session_factory=session_factory
        )
        report.completion = await complete_expired_trips(now=now, session_factory=session_factory)
    finally:
        try:
            await release_lock(client, settings.scheduler_lock_key, token)
        except RedisError:
            logger.warning("Could not release scheduler lock, it will expire after %ss",
                           settings.scheduler_lock_ttl_seconds)

    logger.info(
        "Scheduler tick done: rejected=%d expired=%d completed=%d cancelled=%d failed=%d",
        len(report.rejected_reservation_ids),
        len(report.expired_reservation_ids),
        report.completion.completed,
        report.completion.cancelled,
        report.completion.failed
    )
    return report


async def run_scheduler_forever(interval_seconds: Optional[int] = None) -> None:
    """Tick every ``interval_seconds`` until cancelled. A failed tick is logged and the loop goes on."""
    interval_seconds = interval_seconds or settings.scheduler_interval_seconds
    logger.info("Scheduler started (interval=%ss)", interval_seconds)

    while True:
        try:
            await run_scheduler_tick()
        except DependencyUnavailableError as e:
            logger.error("Scheduler tick aborted: %s", e.message)
        except Exception:
            logger.exception("Scheduler tick crashed")
        await asyncio.sleep(interval_seconds)
