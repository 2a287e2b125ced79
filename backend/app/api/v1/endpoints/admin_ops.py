"""
Admin Operations API Endpoints.

Manual triggers for the scheduler sweep, dead-letter reconciliation and
the settlement audit trail.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.core.guards import require_admin
from backend.app.schemas.ops import AuditLogResponse, SchedulerSummaryResponse, DLQItemResponse
from backend.app.services.audit import get_audit_trail
from backend.app.services.dead_letter import retry_dead_letter
from backend.app.services.trip_completion import complete_expired_trips

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.post("/complete-expired-trips", response_model=SchedulerSummaryResponse)
async def trigger_trip_completion(
    current_user: dict = Depends(require_admin)
):
    """
    Run the trip completion sweep now.

    Each trip is settled in its own session; failures are reported in the summary.
    """
    summary = await complete_expired_trips()
    return SchedulerSummaryResponse.model_validate(summary)


@router.post("/dlq/{dlq_id}/retry", response_model=DLQItemResponse)
async def retry_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Retry a failed task from the Dead Letter Queue."""
    return await retry_dead_letter(
        db,
        dlq_id,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub")
    )


@router.get("/audit-logs", response_model=List[AuditLogResponse])
async def list_audit_logs(
    entity_type: Optional[str] = Query(None, description="trip, reservation, payment..."),
    entity_id: Optional[int] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Audit trail of settlement actions, most recent first."""
    return await get_audit_trail(db, entity_type=entity_type, entity_id=entity_id, action=action, limit=limit)
