"""Non-overlapping scheduled jobs via a Redis lock."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import redis
from redis.exceptions import LockError

from audit_ledger.settings import get_settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get or create the Redis client used for job locks."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(get_settings().redis_url)
    return _redis_client


@contextmanager
def single_flight(
    name: str,
    ttl_seconds: Optional[int] = None,
    client: Optional[redis.Redis] = None,
) -> Iterator[bool]:
    """Yield True if this process holds the job lock, False if another run does.

    The lock expires after ``ttl_seconds`` so a crashed worker cannot block the
    schedule forever.
    """
    client = client or get_redis()
    ttl = ttl_seconds or get_settings().job_lock_ttl_seconds
    lock = client.lock(f"audit-ledger:job:{name}", timeout=ttl, blocking=False)

    if not lock.acquire(blocking=False):
        logger.info(f"Job {name} already running; skipping this run")
        yield False
        return

    try:
        yield True
    finally:
        try:
            lock.release()
        except LockError:
            logger.warning(f"Job lock {name} expired before release")
