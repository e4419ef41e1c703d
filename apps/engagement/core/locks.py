"""
Redis job locks.

Short-lived SET NX locks that keep two workers from draining the outbox at
the same time. Degrades gracefully: if Redis is unavailable the lock is
reported as acquired (fail open). The lock only avoids wasted passes; each
row is still claimed in the database before it is sent, so overlapping
drains never deliver the same message twice.
"""
import logging
from typing import Optional
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        _redis_client.ping()
        logger.info("Redis connection established")
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Job locks disabled.")
        _redis_client = None
        return None


def _lock_key(name: str) -> str:
    return f"engagement_lock:{name}"


def acquire_job_lock(name: str, ttl_s: int) -> bool:
    """
    Acquire an in-flight lock for a job.
    Returns True if lock acquired, False if another worker holds it.
    """
    r = get_redis_client()
    if not r:
        return True  # fail open

    try:
        return bool(r.set(_lock_key(name), "1", nx=True, ex=ttl_s))
    except RedisError as e:
        logger.warning(f"Lock acquire for {name} failed, proceeding without lock: {e}")
        return True


def release_job_lock(name: str) -> None:
    """Release the lock after the job completes."""
    r = get_redis_client()
    if not r:
        return
    try:
        r.delete(_lock_key(name))
    except RedisError as e:
        logger.warning(f"Lock release for {name} failed, will expire after TTL: {e}")


class JobLock:
    """Named lock handle that components can take as a constructor dependency."""

    def __init__(self, name: str, ttl_s: Optional[int] = None):
        self.name = name
        self.ttl_s = ttl_s or settings.OUTBOX_LOCK_TTL_S

    def acquire(self) -> bool:
        return acquire_job_lock(self.name, self.ttl_s)

    def release(self) -> None:
        release_job_lock(self.name)
