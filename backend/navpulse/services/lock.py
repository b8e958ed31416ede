"""
Redis distributed lock.

Keeps a pipeline step to one writer across server instances:
- SET NX EX for atomic acquisition (never a separate EXISTS + SET)
- mandatory TTL so a crashed holder cannot deadlock the next tick
- compare-and-delete / compare-and-expire via Lua so an instance never
  releases or extends a lock it no longer owns
- ``owns()`` lets a long run verify it still holds the lock before
  committing side effects (fencing against zombie runs)
"""
from __future__ import annotations

import uuid

from redis.exceptions import RedisError

from navpulse.core.logging_config import get_main_logger

logger = get_main_logger()

LOCK_KEYS = {
    "indices": "lock:market:indices:update",
    "nav": "lock:nav:daily",
    "graph": "lock:graph:weekly",
    "maintenance": "lock:maintenance:daily",
}

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class DistributedLock:
    """Lock handle owned by one process; every key it sets carries its token."""

    def __init__(self, redis, owner_token: str | None = None):
        self._redis = redis
        self.owner_token = owner_token or uuid.uuid4().hex

    async def acquire(self, key: str, ttl_seconds: int) -> bool:
        """
        Take ``key`` if nobody holds it.

        Fails closed: if Redis is unreachable the caller is told it does
        not hold the lock and should skip this run.
        """
        if ttl_seconds <= 0:
            raise ValueError("Lock TTL must be positive")
        try:
            result = await self._redis.set(key, self.owner_token, nx=True, ex=ttl_seconds)
        except RedisError as e:
            logger.error(f"Lock store unavailable, not acquiring {key}: {e}")
            return False
        return bool(result)

    async def release(self, key: str) -> bool:
        """Delete ``key`` only if this handle still owns it."""
        try:
            result = await self._redis.eval(_RELEASE_SCRIPT, 1, key, self.owner_token)
        except RedisError as e:
            logger.warning(f"Failed to release lock {key}: {e}")
            return False
        return int(result) == 1

    async def extend(self, key: str, ttl_seconds: int) -> bool:
        """Refresh the TTL of ``key`` if still owned."""
        try:
            result = await self._redis.eval(_EXTEND_SCRIPT, 1, key, self.owner_token, ttl_seconds)
        except RedisError as e:
            logger.warning(f"Failed to extend lock {key}: {e}")
            return False
        return int(result) == 1

    async def owns(self, key: str) -> bool:
        """True while ``key`` still holds this handle's token."""
        try:
            value = await self._redis.get(key)
        except RedisError as e:
            logger.warning(f"Cannot verify ownership of {key}: {e}")
            return False
        if isinstance(value, bytes):
            value = value.decode()
        return value == self.owner_token

    async def ttl(self, key: str) -> int:
        """-2 if absent, -1 if no expiry, else seconds remaining."""
        try:
            return int(await self._redis.ttl(key))
        except RedisError:
            return -2
