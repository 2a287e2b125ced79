"""
Admin Billing API Endpoints.

Payment verification and driver payouts.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.models.enums import UserRole
from backend.app.schemas.reservation import PaymentRejectRequest, PaymentResponse
from backend.app.schemas.payout import PayoutCalculationResponse, DriverPayoutResponse
from backend.app.core.guards import require_role
from backend.app.domain.reservations.reservation_service import ReservationService
from backend.app.domain.settlement.payout_service import PayoutService

router = APIRouter(prefix="/admin", tags=["Admin - Billing"])


@router.post("/payments/{payment_id}/confirm", response_model=PaymentResponse)
async def confirm_payment(
    payment_id: int = Path(..., description="Payment ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Mark a PENDING (or previously rejected) payment as received.

    The reservation becomes CONFIRMED.
    """
    return await ReservationService.confirm_payment(
        db,
        payment_id=payment_id,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub")
    )


@router.post("/payments/{payment_id}/reject", response_model=PaymentResponse)
async def reject_payment(
    payload: PaymentRejectRequest,
    payment_id: int = Path(..., description="Payment ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Refuse a PENDING payment whose transfer could not be verified.

    The payment becomes FAILED and the passenger is asked to send the proof again.
    """
    return await ReservationService.reject_payment(
        db,
        payment_id=payment_id,
        reason=payload.reason,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub")
    )


@router.get("/trips/{trip_id}/payout-preview", response_model=PayoutCalculationResponse)
async def preview_driver_payout(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Compute the payout breakdown without persisting it."""
    calculation = await PayoutService.calculate_driver_payout(db, trip_id)
    return PayoutCalculationResponse.model_validate(calculation)


@router.post("/trips/{trip_id}/payout", response_model=DriverPayoutResponse, status_code=201)
async def create_driver_payout(
    trip_id: int = Path(..., description="Trip ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Create the payout for a COMPLETED trip.

    Fails with 409 if one already exists.
    """
    return await PayoutService.create_driver_payout(
        db,
        trip_id,
        actor_id=current_user["user_id"],
        actor_username=current_user.get("sub")
    )
