"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import (
    reservations, trips,
    admin_billing, admin_ops,
    notifications
)

router = APIRouter()

# Passenger / driver flows
router.include_router(reservations.router)
router.include_router(trips.router)

# Admin endpoints
router.include_router(admin_billing.router)
router.include_router(admin_ops.router)

# Notifications
router.include_router(notifications.router)
