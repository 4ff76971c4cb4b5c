"""Redis client for settlement idempotency keys.

Manual release / complete / cancel requests may carry an Idempotency-Key.
A client retrying a timed-out request must not trigger a second on-chain
submission, so the key is reserved in Redis before the gateway is called.

Usage:
    from escrow_settlement.infrastructure.redis_client import init_redis, reserve_idempotency

    await init_redis()
    if not await reserve_idempotency("release:42:abc"):
        ...  # duplicate
"""

from __future__ import annotations

import redis.asyncio as aioredis

from escrow_settlement.config import get_settings
from escrow_settlement.logging_config import get_logger

logger = get_logger(__name__)

_KEY_PREFIX = "settlement-idempotency:"

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def redis_available() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


async def reserve_idempotency(key: str, value: str = "pending") -> bool:
    """Atomically reserve an idempotency key (SET NX with TTL).

    Returns True if the key was new, False if it was already used.
    """
    settings = get_settings()
    redis = get_redis()
    reserved = await redis.set(
        f"{_KEY_PREFIX}{key}",
        value,
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    return bool(reserved)


async def complete_idempotency(key: str, tx_hash: str) -> None:
    """Record the transaction hash a reserved key produced."""
    settings = get_settings()
    redis = get_redis()
    await redis.set(
        f"{_KEY_PREFIX}{key}",
        tx_hash,
        ex=settings.redis_idempotency_ttl_seconds,
    )


async def release_idempotency(key: str) -> None:
    """Free a reserved key when the operation failed before submission."""
    redis = get_redis()
    await redis.delete(f"{_KEY_PREFIX}{key}")
