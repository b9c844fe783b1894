"""Redis store for caching and distributed locks.

Handles:
- Caching with TTL policies
- Generic-name pins (detailed name -> first generic name seen)
- Distributed locks (one reprocess per receipt at a time)

Redis is optional at runtime: callers that can live without it use the
tolerant helpers (GenericNamePins, receipt_lock) which log and carry on.

TTL policies:
- Generic-name pins: ~180 days (configurable)
- Reprocess locks: 2 minutes
"""

import hashlib
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.settings import get_settings

# TTL constants (in seconds)
TTL_GENERIC_NAME_PIN = 180 * 24 * 3600  # 180 days
TTL_REPROCESS_LOCK = 120  # 2 minutes

# Key prefixes
PREFIX_GENERIC_NAME_PIN = "stdname:pin:"
PREFIX_LOCK = "lock:"
PREFIX_REPROCESS_LOCK = "reprocess:"

# Redis client (initialized on startup)
_redis: redis.Redis | None = None
logger = logging.getLogger("uvicorn.error")


async def init_redis() -> None:
    """Initialize Redis connection."""
    global _redis
    settings = get_settings()
    _redis = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    # Validate connectivity early (especially for `rediss://` in production).
    await _redis.ping()
    logger.info("Redis connected")


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def _get_redis() -> redis.Redis:
    """Get Redis client instance."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


def _hash_key(*parts: str) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update(p.encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()[:40]


# ============================================================
# Generic cache operations
# ============================================================


async def cache_get(key: str) -> str | None:
    """Get value from cache.

    Args:
        key: Cache key.

    Returns:
        Cached value or None if not found.
    """
    return await _get_redis().get(key)


async def cache_set_if_absent(key: str, value: str, ttl: int) -> bool:
    """Set value only if the key does not exist yet.

    Returns:
        True if this call stored the value.
    """
    result = await _get_redis().set(key, value, nx=True, ex=ttl)
    return result is not None


async def cache_delete(key: str) -> None:
    """Delete value from cache.

    Args:
        key: Cache key.
    """
    await _get_redis().delete(key)


async def cache_get_json(key: str) -> dict[str, Any] | None:
    """Get JSON value from cache.

    Args:
        key: Cache key.

    Returns:
        Parsed JSON dict or None if not found.
    """
    value = await cache_get(key)
    if value:
        return json.loads(value)
    return None


# ============================================================
# Generic-name pins
# ============================================================


def generic_name_pin_key(detailed_name: str) -> str:
    normalized = " ".join(detailed_name.lower().split())
    return f"{PREFIX_GENERIC_NAME_PIN}{_hash_key(normalized)}"


class GenericNamePins:
    """Keep one generic name per detailed name across batches.

    The first pin for a detailed name wins (SET NX). Lookups and writes never
    raise: when Redis is down or not initialized pinning is skipped.
    """

    def __init__(self, ttl: int = TTL_GENERIC_NAME_PIN):
        self.ttl = ttl

    async def get(self, detailed_name: str) -> tuple[str, str] | None:
        try:
            payload = await cache_get_json(generic_name_pin_key(detailed_name))
        except (RuntimeError, RedisError, ValueError) as e:
            logger.debug(f"[pins] lookup skipped: {e}")
            return None
        if not payload or not payload.get("generic_name"):
            return None
        return str(payload["generic_name"]), str(payload.get("category") or "Other")

    async def pin(self, detailed_name: str, generic_name: str, category: str) -> bool:
        value = json.dumps({"generic_name": generic_name, "category": category}, ensure_ascii=False)
        try:
            return await cache_set_if_absent(generic_name_pin_key(detailed_name), value, self.ttl)
        except (RuntimeError, RedisError) as e:
            logger.debug(f"[pins] write skipped: {e}")
            return False


# ============================================================
# Distributed locks
# ============================================================


async def acquire_lock(key: str, ttl: int = TTL_REPROCESS_LOCK) -> bool:
    """Acquire a distributed lock.

    Args:
        key: Lock key (e.g., receipt id).
        ttl: Lock timeout in seconds.

    Returns:
        True if lock acquired, False if already locked.
    """
    lock_key = f"{PREFIX_LOCK}{key}"
    # SET NX (only if not exists) with TTL
    result = await _get_redis().set(lock_key, "1", nx=True, ex=ttl)
    return result is not None


async def release_lock(key: str) -> None:
    """Release a distributed lock.

    Args:
        key: Lock key.
    """
    await cache_delete(f"{PREFIX_LOCK}{key}")


class LockBusy(RuntimeError):
    pass


@asynccontextmanager
async def receipt_lock(receipt_id: str) -> AsyncIterator[None]:
    """Hold the reprocess lock for a receipt.

    Raises LockBusy if another worker holds it. Without Redis the body runs
    unlocked.
    """
    key = f"{PREFIX_REPROCESS_LOCK}{receipt_id}"
    locked = False
    try:
        if not await acquire_lock(key, ttl=TTL_REPROCESS_LOCK):
            raise LockBusy(f"Receipt {receipt_id} is already being reprocessed")
        locked = True
    except (RuntimeError, RedisError) as e:
        if isinstance(e, LockBusy):
            raise
        logger.warning(f"[lock] Redis unavailable, reprocessing {receipt_id} without lock: {e}")

    try:
        yield
    finally:
        if locked:
            try:
                await release_lock(key)
            except (RuntimeError, RedisError):
                logger.warning(f"[lock] failed to release reprocess lock for {receipt_id}")
