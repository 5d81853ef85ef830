"""Redis store for session persistence.

Handles:
- Persisting the signed-in session (credential pair + user) with a TTL
- Generic JSON cache helpers

TTL policies:
- Session: Settings.session_ttl (30 days by default)

If Redis was never initialised every helper raises RuntimeError; callers treat
that as "persistence disabled".
"""

import json
import logging
from typing import Any

import redis.asyncio as redis

from sportmatch.settings import get_settings

# Key prefixes
PREFIX_SESSION = "sportmatch:session:"
DEFAULT_SESSION_SLOT = "default"

# Redis client (initialized on startup)
_redis: redis.Redis | None = None
logger = logging.getLogger("sportmatch")


async def init_redis(url: str | None = None) -> None:
    """Initialize Redis connection."""
    global _redis
    settings = get_settings()
    _redis = redis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    await _redis.ping()
    logger.info("Redis connected")


def use_redis(client: redis.Redis | None) -> None:
    """Install an already-built client (tests, embedding applications)."""
    global _redis
    _redis = client


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


# ============================================================
# Generic cache operations
# ============================================================


async def cache_get_json(key: str) -> dict[str, Any] | None:
    """Get JSON value from cache.

    Args:
        key: Cache key.

    Returns:
        Parsed JSON dict or None if not found.
    """
    value = await _get_redis().get(key)
    if value:
        return json.loads(value)
    return None


async def cache_set_json(key: str, value: dict[str, Any], ttl: int) -> None:
    """Set JSON value in cache with TTL.

    Args:
        key: Cache key.
        value: Dict to cache as JSON.
        ttl: Time-to-live in seconds.
    """
    await _get_redis().setex(key, ttl, json.dumps(value))


async def cache_delete(key: str) -> None:
    await _get_redis().delete(key)


# ============================================================
# Session persistence
# ============================================================


async def get_persisted_session(slot: str = DEFAULT_SESSION_SLOT) -> dict[str, Any] | None:
    """Get the persisted session payload for a slot."""
    return await cache_get_json(f"{PREFIX_SESSION}{slot}")


async def set_persisted_session(slot: str, payload: dict[str, Any], ttl: int) -> None:
    """Persist a session payload for `ttl` seconds."""
    await cache_set_json(f"{PREFIX_SESSION}{slot}", payload, ttl)


async def delete_persisted_session(slot: str = DEFAULT_SESSION_SLOT) -> None:
    await cache_delete(f"{PREFIX_SESSION}{slot}")
