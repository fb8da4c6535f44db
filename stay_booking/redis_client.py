"""Shared Redis client and the per-property booking lock."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from uuid import UUID

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockNotOwnedError

from .config import settings
from .errors import ConflictError

logger = structlog.get_logger(__name__)

_redis: Optional[aioredis.Redis] = None


async def get_redis() -> aioredis.Redis:
    """Redis client dependency."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
    _redis = None


@asynccontextmanager
async def property_calendar_lock(
    redis: Optional[aioredis.Redis],
    property_id: UUID,
) -> AsyncIterator[None]:
    """
    Serialize booking writes for one property.

    Keyed on the property rather than the date range: two overlapping but
    different ranges must contend for the same lock. Without a client the
    block runs unlocked and the database overlap constraint is the only guard.
    """
    if redis is None:
        yield
        return

    lock = redis.lock(
        f"booking:lock:{property_id}",
        timeout=settings.BOOKING_LOCK_TIMEOUT_SECONDS,
    )
    if not await lock.acquire(blocking_timeout=settings.BOOKING_LOCK_BLOCKING_TIMEOUT_SECONDS):
        logger.warning("Booking lock busy", property_id=str(property_id))
        raise ConflictError(
            "Another booking is being processed for this property. Please try again.",
            details={"reason": "lock_busy"},
        )

    try:
        yield
    finally:
        try:
            await lock.release()
        except LockNotOwnedError:
            # TTL ran out before the write finished; the lock is already gone
            logger.warning("Booking lock expired before release", property_id=str(property_id))
