"""
Reservation API Endpoints.

Passengers request and cancel seats; drivers approve, reject or
waitlist requests on their own trips.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.models.enums import UserRole
from backend.app.core.guards import require_role
from backend.app.domain.reservations.reservation_service import ReservationService
from backend.app.domain.settlement.cancellation_service import CancellationCalculator
from backend.app.schemas.reservation import ReservationCreate, ReservationResponse
from backend.app.schemas.cancellation import CancelRequest, ReservationCancellationResponse

router = APIRouter(tags=["Reservations"])


@router.post("/trips/{trip_id}/reservations", response_model=ReservationResponse, status_code=201)
async def create_reservation(
    request: ReservationCreate,
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_role([UserRole.PASSENGER])),
    db: AsyncSession = Depends(get_db)
):
    """Request seats on a trip. The driver must approve the request."""
    return await ReservationService.create_reservation(
        db,
        trip_id=trip_id,
        passenger_id=current_user["user_id"],
        seats=request.seats,
        actor_username=current_user.get("sub")
    )


@router.post("/trips/{trip_id}/reservations/{reservation_id}/approve", response_model=ReservationResponse)
async def approve_reservation(
    trip_id: int = Path(..., description="Trip ID"),
    reservation_id: int = Path(..., description="Reservation ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    """
    Approve a pending or waitlisted reservation.

    Holds the seats and opens a PENDING payment for the passenger.
    """
    return await ReservationService.approve_reservation(
        db,
        trip_id=trip_id,
        reservation_id=reservation_id,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub")
    )


@router.post("/trips/{trip_id}/reservations/{reservation_id}/reject", response_model=ReservationResponse)
async def reject_reservation(
    trip_id: int = Path(..., description="Trip ID"),
    reservation_id: int = Path(..., description="Reservation ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    """Reject a reservation. Paid passengers can never be rejected."""
    return await ReservationService.reject_reservation(
        db,
        trip_id=trip_id,
        reservation_id=reservation_id,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub")
    )


@router.post("/trips/{trip_id}/reservations/{reservation_id}/waitlist", response_model=ReservationResponse)
async def waitlist_reservation(
    trip_id: int = Path(..., description="Trip ID"),
    reservation_id: int = Path(..., description="Reservation ID"),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    db: AsyncSession = Depends(get_db)
):
    return await ReservationService.waitlist_reservation(
        db,
        trip_id=trip_id,
        reservation_id=reservation_id,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub")
    )


@router.post("/reservations/{reservation_id}/cancel", response_model=ReservationCancellationResponse)
async def cancel_reservation(
    request: CancelRequest,
    reservation_id: int = Path(..., description="Reservation ID"),
    current_user: dict = Depends(require_role([UserRole.PASSENGER])),
    db: AsyncSession = Depends(get_db)
):
    """
    Cancel your own reservation.

    Refund tier depends on how long before departure the cancellation happens.
    """
    result = await CancellationCalculator.cancel_reservation(
        db,
        reservation_id=reservation_id,
        reason=request.reason,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub")
    )
    return ReservationCancellationResponse.model_validate(result)
