"""
Trip API Endpoints.

Trips are offered through the driver-facing product; this engine only
exposes the driver's full-trip cancellation.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.models.enums import UserRole
from backend.app.core.guards import require_role
from backend.app.domain.settlement.cancellation_service import CancellationCalculator
from backend.app.schemas.cancellation import CancelRequest, TripCancellationResponse

router = APIRouter(prefix="/trips", tags=["Trips"])


@router.post("/{trip_id}/cancel", response_model=TripCancellationResponse)
async def cancel_trip(
    request: CancelRequest,
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    """
    Cancel the whole trip.

    Every paid passenger gets the full trip price back; the service fee is retained.
    """
    result = await CancellationCalculator.cancel_trip(
        db,
        trip_id=trip_id,
        reason=request.reason,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub")
    )
    return TripCancellationResponse.model_validate(result)
