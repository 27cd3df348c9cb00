"""
Redis client manager for the question catalog.

Provides:
- Async Redis client with connection pooling
- Singleton pattern for resource efficiency
- Graceful degradation when Redis is unavailable
"""

import time
from typing import Optional

import redis.asyncio as redis
import structlog

from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

# Global Redis client instance (singleton)
_redis_client: Optional[redis.Redis] = None
_failed_at: Optional[float] = None  # Circuit breaker: time of the last failed connect

RECONNECT_COOLDOWN_SECONDS = 30.0


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url.split("//")[-1]


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Get or create async Redis client with connection pooling.

    Returns:
        Redis client instance, or None if Redis is not configured or unreachable
    """
    global _redis_client, _failed_at

    if _failed_at is not None and time.monotonic() - _failed_at < RECONNECT_COOLDOWN_SECONDS:
        logger.debug("Redis connection recently failed, skipping reconnect attempt")
        return None

    if _redis_client is not None:
        try:
            await _redis_client.ping()
            return _redis_client
        except Exception as e:
            logger.warning("Existing Redis connection failed, reconnecting", error=str(e))
            _redis_client = None

    redis_url = get_settings().redis_url
    if not redis_url:
        logger.warning(
            "Redis URL not configured, question catalog disabled",
            hint="Set CHATBOT_REDIS_URL to enable top-question clustering",
        )
        return None

    try:
        _redis_client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )
        await _redis_client.ping()
        _failed_at = None

        logger.info("Redis client initialized successfully", url=_redact(redis_url), max_connections=20)
        return _redis_client

    except Exception as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            error_type=type(e).__name__,
            redis_url=_redact(redis_url),
        )
        _redis_client = None
        _failed_at = time.monotonic()
        return None


async def close_redis_client():
    """Close Redis client connection."""
    global _redis_client

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except Exception as e:
            logger.warning("Error closing Redis client", error=str(e))
        finally:
            _redis_client = None


def reset_redis_client():
    """Forget the cached client and circuit breaker state (tests, reconfiguration)."""
    global _redis_client, _failed_at
    _redis_client = None
    _failed_at = None
