"""Redis client for idempotency keys and the notification stream.

Redis is optional: when it is not reachable at startup the service still
runs, idempotency keys are not enforced and the log notification sink is
used instead of the stream sink.

Usage:
    from milestone_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=3600)
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from milestone_escrow.config import get_settings
from milestone_escrow.domain.exceptions import DuplicateOperationError
from milestone_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def is_redis_available() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


async def claim_idempotency_key(key: str, value: str = "1") -> bool:
    """Atomically claim an idempotency key with a TTL.

    Returns True if the key was new, False if it was already used.
    """
    settings = get_settings()
    redis = get_redis()
    claimed = await redis.set(
        f"idempotency:{key}",
        value,
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    return bool(claimed)


async def release_idempotency_key(key: str) -> None:
    """Forget a claimed key, so a failed operation can be retried with it."""
    redis = get_redis()
    await redis.delete(f"idempotency:{key}")


# --- Stream Helpers ---


async def append_to_stream(stream_key: str, fields: dict[str, str], maxlen: int) -> str:
    """XADD an entry to a capped stream and return its entry id."""
    redis = get_redis()
    return await redis.xadd(stream_key, fields, maxlen=maxlen, approximate=True)


@asynccontextmanager
async def idempotency_guard(key: str | None) -> AsyncIterator[None]:
    """Run the block at most once per ``key`` while the key's TTL lasts.

    A failed block releases the key so the caller can retry with it. Without
    a key, or while Redis is unavailable, the block simply runs.

    Raises:
        DuplicateOperationError: If the key was already claimed.
    """
    if not key or not is_redis_available():
        yield
        return

    try:
        claimed = await claim_idempotency_key(key)
    except RedisError as exc:
        logger.warning("idempotency.unavailable", key=key, error=str(exc))
        yield
        return
    if not claimed:
        logger.warning("idempotency.duplicate", key=key)
        raise DuplicateOperationError(key)

    try:
        yield
    except BaseException:
        try:
            await release_idempotency_key(key)
        except RedisError as exc:
            logger.warning("idempotency.release_failed", key=key, error=str(exc))
        raise
