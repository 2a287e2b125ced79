"""
Utility functions for time and money handling.

All instants are handled as timezone-aware UTC. SQLite drops tzinfo on
read, so values coming back from the database go through ``as_utc``.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def utcnow() -> datetime:
    """Current instant, timezone-aware UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_money(value: Any) -> Decimal:
    """Coerce a number to a Decimal rounded half-up to cents."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_to_json(value: Optional[Decimal]) -> Optional[str]:
    """Serialize money for JSON audit payloads."""
    if value is None:
        return None
    return str(to_money(value))
