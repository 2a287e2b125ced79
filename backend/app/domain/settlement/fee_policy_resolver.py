"""
Fee Policy Resolver.

Responsible for determining the fee policy that applies to a trip.
A trip without a policy (or with a deactivated one) falls back to its
flat service fee at payout time and to the default percentage when a
payment is created.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models.fee_policy import FeePolicy
from backend.app.models.trip import Trip

logger = logging.getLogger(__name__)


class FeePolicyResolver:

    @staticmethod
    async def resolve_for_trip(db: AsyncSession, trip: Trip) -> Optional[FeePolicy]:
        """Active fee policy referenced by the trip, or None."""
        if trip.fee_policy_id is None:
            return None

        policy = await db.get(FeePolicy, trip.fee_policy_id)
        if policy is None or not policy.is_active:
            logger.warning("Trip %s references inactive or missing fee policy %s", trip.id, trip.fee_policy_id)
            return None

        return policy
