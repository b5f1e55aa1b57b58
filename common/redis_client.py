"""
Redis client utilities for request rate limiting
"""
import logging
import time
import redis
from typing import Dict, Any, Optional
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client or redis.Redis.from_url(
            settings.redis_url, decode_responses=True, socket_connect_timeout=1, socket_timeout=1
        )

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def check_rate_limit(self, account_id: str, endpoint: str, max_requests: int, window_seconds: int) -> Dict[str, Any]:
        """Fixed-window counter for an account/endpoint pair. Fails open if Redis is down."""
        now = int(time.time())
        window_start = now // window_seconds * window_seconds
        reset_time = window_start + window_seconds
        key = f"rate_limit:{account_id}:{endpoint}:{window_start}"

        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, window_seconds)
            new_count = pipe.execute()[0]
        except redis.RedisError as e:
            logger.warning(f"🚨 Rate limit check failed, allowing request: {e}")
            return {
                "allowed": True,
                "count": 0,
                "remaining": max_requests,
                "reset_time": 0,
                "retry_after": 0
            }

        allowed = new_count <= max_requests
        return {
            "allowed": allowed,
            "count": new_count,
            "remaining": max(0, max_requests - new_count),
            "reset_time": reset_time,
            "retry_after": 0 if allowed else reset_time - now
        }

_redis_client = None

def get_redis_client() -> RedisClient:
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
