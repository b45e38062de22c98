"""Redis client for session lookup

Sessions are written by the authentication service; this backend only resolves
a session id cookie to the user id it belongs to.
"""
import logging
from typing import Optional

import redis

from billing.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def ping_redis() -> bool:
    try:
        return bool(get_redis_client().ping())
    except redis.RedisError as e:
        logger.error(f"Redis connection failed: {e}")
        return False


def set_session(session_id: str, user_id: str):
    get_redis_client().setex(f"session:{session_id}", settings.SESSION_TTL_SECONDS, str(user_id))


def get_session(session_id: str) -> Optional[str]:
    """Return the user id for a session, or None when missing or expired"""
    return get_redis_client().get(f"session:{session_id}")
