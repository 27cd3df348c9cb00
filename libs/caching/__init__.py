"""
Redis connection management for the chatbot.

Follows the singleton + circuit-breaker pattern; callers degrade when no
client is available.
"""

from libs.caching.redis_client import close_redis_client, get_redis_client

__all__ = ["close_redis_client", "get_redis_client"]
