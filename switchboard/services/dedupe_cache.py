"""Redis fast path for inbound message-id dedupe.

The unique index on messages stays authoritative; Redis only short-circuits
retries that were already seen.
"""

from typing import Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from switchboard.config import settings
from switchboard.logging_config import get_logger

logger = get_logger("dedupe_cache")

_redis_client = None
_redis_url = None


def get_redis_client(redis_url: Optional[str] = None):
    global _redis_client, _redis_url

    redis_url = redis_url or settings.redis_url
    if not redis_url:
        return None

    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=2.0,
            socket_timeout=2.0,
        )

    return _redis_client


def dedupe_key(tenant_id, message_id: str) -> str:
    return f"switchboard:dedupe:{tenant_id}:{message_id}"


async def seen_before(redis_client, tenant_id, message_id: Optional[str]) -> bool:
    """Mark the id as seen; True when it already was. Redis errors count as unseen."""
    if not redis_client or not message_id:
        return False
    try:
        was_set = await redis_client.set(dedupe_key(tenant_id, message_id), "1", ex=settings.dedupe_ttl_seconds, nx=True)
    except RedisError as e:
        logger.warning(f"Dedupe redis unavailable, falling back to DB: {e}")
        return False
    return not was_set


async def forget(redis_client, tenant_id, message_id: Optional[str]) -> None:
    """Drop the marker after a failed ingest so a retry is not mistaken for a duplicate."""
    if not redis_client or not message_id:
        return
    try:
        await redis_client.delete(dedupe_key(tenant_id, message_id))
    except RedisError as e:
        logger.warning(f"Dedupe redis delete failed: {e}")
