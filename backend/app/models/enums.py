"""
User roles enumeration.

Identity lives in an external service; the role only arrives as a JWT claim.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Verifies payments, manages payouts and runs ops jobs
        DRIVER: Offers trips and manages their passengers
        PASSENGER: Reserves seats on trips
    """
    ADMIN = "ADMIN"
    DRIVER = "DRIVER"
    PASSENGER = "PASSENGER"
