"""
Redis client initialization and connection management.

Redis only backs the scheduler's cross-instance lock; the settlement
rules themselves never depend on it.
"""

import logging
import uuid
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Compare-and-delete: a lock that expired and was taken by another holder is left alone
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

# Create async Redis client
redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    """
    Get Redis client instance.

    This can be used as a FastAPI dependency if needed.
    """
    return redis_client


async def ping_redis() -> bool:
    """
    Test Redis connection.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        return await redis_client.ping()
    except RedisError as e:
        logger.warning("Redis ping failed: %s", e)
        return False


async def acquire_lock(client, key: str, ttl_seconds: int) -> Optional[str]:
    """
    Take a best-effort distributed lock (SET key token NX EX ttl).

    Returns:
        The lock token when acquired, None if another holder has it
    """
    token = uuid.uuid4().hex
    acquired = await client.set(key, token, nx=True, ex=ttl_seconds)
    return token if acquired else None


async def release_lock(client, key: str, token: str) -> bool:
    """Release the lock only if we still hold it, in one round trip."""
    released = await client.eval(RELEASE_LOCK_SCRIPT, 1, key, token)
    return bool(released)
