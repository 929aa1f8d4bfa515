"""Redis client for scheduler locks and transition event fan-out"""
import logging
import uuid
from typing import Optional

import redis

from billing.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

ROLLOVER_LOCK_KEY = "billing:lock:rollover"


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def acquire_lock(lock_key: str, timeout: int = 30) -> Optional[str]:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock timeout in seconds, so a crashed holder cannot block forever

    Returns:
        Owner token to pass to release_lock, or None if the lock is held
    """
    token = uuid.uuid4().hex
    if get_redis_client().set(lock_key, token, nx=True, ex=timeout):
        return token
    return None


def release_lock(lock_key: str, token: str) -> bool:
    """Release a lock only if it is still ours.

    A tick that outlived its timeout must not delete the lock a second
    instance has since acquired.
    """
    with get_redis_client().pipeline() as pipe:
        try:
            pipe.watch(lock_key)
            if pipe.get(lock_key) != token:
                pipe.unwatch()
                logger.warning(f"Lock {lock_key} expired before release")
                return False
            pipe.multi()
            pipe.delete(lock_key)
            pipe.execute()
            return True
        except redis.WatchError:
            logger.warning(f"Lock {lock_key} changed hands during release")
            return False


def publish_message(channel: str, message: str) -> int:
    """Publish a message on a pub/sub channel, returning the number of receivers"""
    return get_redis_client().publish(channel, message)
