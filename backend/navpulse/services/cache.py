"""
Tiered cache: Redis first, database table as fallback.

Every operation goes to Redis while the primary circuit is closed. Any Redis
error opens the circuit and the same call is served by the ``cache_entries``
table; after ``retry_seconds`` a single probe call tries Redis again. Callers
never learn which tier answered.

Values are JSON-encoded. A value written with a TTL is never readable after
the TTL in either tier (durable reads filter on ``expires_at``).
"""
from __future__ import annotations

import json
import math
import re
from datetime import timedelta
from typing import Any, List

from redis.exceptions import RedisError
from sqlalchemy import delete, or_, select, and_
from sqlalchemy.exc import SQLAlchemyError

from navpulse.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from navpulse.core.clock import Clock, system_clock, to_naive_utc
from navpulse.core.logging_config import get_main_logger
from navpulse.db.database import dialect_insert
from navpulse.db.models import CacheEntry

logger = get_main_logger()

CACHE_KEYS = {
    "indices_latest": "market:indices:latest",
    "market_status": "market:status",
    "returns": "returns:{fund_id}",
    "graph": "graph:{fund_id}:{period}",
    "graph_fund": "graph:{fund_id}:*",
}

_GLOB_CHARS = re.compile(r"[*?\[\]]")


class StoreUnavailableError(Exception):
    """The durable store failed; there is no further tier to fall back to."""


def is_pattern(key: str) -> bool:
    return bool(_GLOB_CHARS.search(key))


LIKE_ESCAPE = "\\"


def _like_literal(ch: str) -> str:
    return LIKE_ESCAPE + ch if ch in "%_\\" else ch


def glob_to_like(pattern: str) -> str:
    """
    Translate a Redis glob into a SQL ``LIKE`` pattern (escape ``\\``).

    ``*`` and ``?`` map exactly and the match stays anchored and ordered.
    A ``[...]`` class becomes a single-character wildcard, so the durable
    tier can match a superset of what Redis would for such patterns.
    """
    out: List[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            out.append("%")
        elif ch == "?":
            out.append("_")
        elif ch == "[" and pattern.find("]", i + 1) != -1:
            out.append("_")
            i = pattern.find("]", i + 1)
        elif ch == "\\" and i + 1 < len(pattern):
            i += 1
            out.append(_like_literal(pattern[i]))
        else:
            out.append(_like_literal(ch))
        i += 1
    return "".join(out)


class TieredCache:
    """Read/write cache over Redis with a relational fallback tier."""

    def __init__(
        self,
        redis,
        session_factory,
        clock: Clock = system_clock,
        retry_seconds: float = 30.0,
    ):
        self._redis = redis
        self._session_factory = session_factory
        self._clock = clock
        self._breaker = CircuitBreaker(
            CircuitBreakerConfig(failure_threshold=1, recovery_timeout=retry_seconds),
            name="cache_primary",
        )

    @property
    def primary_available(self) -> bool:
        return self._redis is not None and not self._breaker.is_open

    async def connect(self) -> bool:
        """Probe Redis once at startup and set the availability flag."""
        if self._redis is None:
            return False
        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            self._primary_failed("ping", "-", e)
            return False
        self._breaker.reset()
        logger.info("Cache primary tier (Redis) connected")
        return True

    # ==================== PUBLIC API ====================

    async def get(self, key: str) -> Any:
        if self._use_primary():
            try:
                raw = await self._redis.get(key)
            except (RedisError, OSError) as e:
                self._primary_failed("GET", key, e)
            else:
                self._breaker.record_success()
                return self._decode(raw)
        return await self._durable_get(key)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        encoded = json.dumps(value, default=str)
        if self._use_primary():
            try:
                await self._redis.set(key, encoded, ex=ttl_seconds or None)
            except (RedisError, OSError) as e:
                self._primary_failed("SET", key, e)
            else:
                self._breaker.record_success()
                # Any instance may have left a fallback copy during an outage
                await self._drop_stale_fallback(key)
                return
        await self._durable_set(key, encoded, ttl_seconds)

    async def delete(self, key_or_pattern: str) -> int:
        """Delete a key, or every key matching a glob pattern. Returns count removed."""
        removed = 0
        primary_ok = False
        if self._use_primary():
            try:
                if is_pattern(key_or_pattern):
                    keys = [k async for k in self._redis.scan_iter(match=key_or_pattern)]
                    if keys:
                        removed += int(await self._redis.delete(*keys))
                else:
                    removed += int(await self._redis.delete(key_or_pattern))
            except (RedisError, OSError) as e:
                self._primary_failed("DEL", key_or_pattern, e)
            else:
                self._breaker.record_success()
                primary_ok = True

        if not primary_ok:
            return removed + await self._durable_delete(key_or_pattern)

        # The durable tier is shared by every instance, so it is always swept
        try:
            durable_removed = await self._durable_delete(key_or_pattern)
        except StoreUnavailableError as e:
            logger.warning(f"Could not drop fallback copies of {key_or_pattern}: {e}")
            return removed
        return max(removed, durable_removed)

    async def exists(self, key: str) -> bool:
        if self._use_primary():
            try:
                result = await self._redis.exists(key)
            except (RedisError, OSError) as e:
                self._primary_failed("EXISTS", key, e)
            else:
                self._breaker.record_success()
                return int(result) > 0
        return await self._durable_ttl(key) != -2

    async def ttl(self, key: str) -> int:
        """-2 if absent, -1 if no expiry, else seconds remaining."""
        if self._use_primary():
            try:
                result = await self._redis.ttl(key)
            except (RedisError, OSError) as e:
                self._primary_failed("TTL", key, e)
            else:
                self._breaker.record_success()
                return int(result)
        return await self._durable_ttl(key)

    async def purge_expired(self) -> int:
        """Delete expired durable rows. Reads already ignore them."""
        now = self._now()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(CacheEntry).where(
                        and_(CacheEntry.expires_at.isnot(None), CacheEntry.expires_at <= now)
                    )
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Durable cache purge failed: {e}") from e

    def get_stats(self) -> dict:
        return {
            "primary_available": self.primary_available,
            "breaker": self._breaker.get_stats(),
        }

    # ==================== INTERNALS ====================

    def _use_primary(self) -> bool:
        return self._redis is not None and self._breaker.can_proceed()

    def _primary_failed(self, op: str, key: str, error: BaseException) -> None:
        if not self._breaker.is_open:
            logger.warning(f"Cache primary {op} failed for {key}, using durable tier: {error}")
        self._breaker.record_failure()

    def _now(self):
        return to_naive_utc(self._clock())

    @staticmethod
    def _decode(raw: Any) -> Any:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return json.loads(raw)

    def _live(self, now):
        return or_(CacheEntry.expires_at.is_(None), CacheEntry.expires_at > now)

    async def _durable_get(self, key: str) -> Any:
        now = self._now()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CacheEntry.value).where(CacheEntry.key == key, self._live(now))
                )
                raw = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Durable cache read failed for {key}: {e}") from e
        return self._decode(raw)

    async def _durable_set(self, key: str, encoded: str, ttl_seconds: int | None) -> None:
        now = self._now()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        try:
            async with self._session_factory() as session:
                stmt = dialect_insert(session, CacheEntry).values(
                    key=key, value=encoded, expires_at=expires_at, updated_at=now
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["key"],
                    set_={
                        "value": stmt.excluded.value,
                        "expires_at": stmt.excluded.expires_at,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Durable cache write failed for {key}: {e}") from e

    async def _durable_delete(self, key_or_pattern: str) -> int:
        if is_pattern(key_or_pattern):
            condition = CacheEntry.key.like(glob_to_like(key_or_pattern), escape=LIKE_ESCAPE)
        else:
            condition = CacheEntry.key == key_or_pattern
        try:
            async with self._session_factory() as session:
                result = await session.execute(delete(CacheEntry).where(condition))
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Durable cache delete failed for {key_or_pattern}: {e}") from e

    async def _durable_ttl(self, key: str) -> int:
        now = self._now()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CacheEntry.expires_at).where(CacheEntry.key == key, self._live(now))
                )
                row = result.first()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Durable cache TTL lookup failed for {key}: {e}") from e
        if row is None:
            return -2
        if row.expires_at is None:
            return -1
        return max(0, math.ceil((row.expires_at - now).total_seconds()))

    async def _drop_stale_fallback(self, key: str) -> None:
        try:
            await self._durable_delete(key)
        except StoreUnavailableError as e:
            logger.warning(f"Could not drop fallback copy of {key}: {e}")
