"""
Latest-value store for market indices.

One row per symbol, overwritten in place. A write only lands if its fetch
timestamp is newer than the stored one, so a slow run that finishes after
a faster later run cannot roll a symbol back.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from navpulse.core.clock import Clock, system_clock, to_naive_utc
from navpulse.core.logging_config import get_main_logger
from navpulse.db.database import dialect_insert
from navpulse.db.models import IndexSnapshot
from navpulse.services.models import IndexQuote

logger = get_main_logger()

MAJOR_INDICES = ["NIFTY50", "SENSEX", "NIFTYBANK", "NIFTYNEXT50", "NIFTYMIDCAP"]


def _row_values(quote: IndexQuote, is_market_open: bool) -> dict:
    return {
        "symbol": quote.symbol,
        "display_name": quote.display_name,
        "value": quote.value,
        "change": quote.change,
        "percent_change": quote.percent_change,
        "open": quote.open,
        "high": quote.high,
        "low": quote.low,
        "previous_close": quote.previous_close,
        "last_updated_at": to_naive_utc(quote.fetched_at) if quote.fetched_at else None,
        "is_market_open_at_capture": is_market_open,
    }


class SnapshotStore:
    """Read/write access to ``index_snapshots``."""

    def __init__(self, session_factory, clock: Clock = system_clock):
        self._session_factory = session_factory
        self._clock = clock

    def _upsert_statement(self, session, values: List[dict]):
        stmt = dialect_insert(session, IndexSnapshot).values(values)
        excluded = stmt.excluded
        return stmt.on_conflict_do_update(
            index_elements=["symbol"],
            set_={
                "display_name": excluded.display_name,
                "value": excluded.value,
                "change": excluded.change,
                "percent_change": excluded.percent_change,
                "open": excluded.open,
                "high": excluded.high,
                "low": excluded.low,
                "previous_close": excluded.previous_close,
                "last_updated_at": excluded.last_updated_at,
                "is_market_open_at_capture": excluded.is_market_open_at_capture,
            },
            where=or_(
                IndexSnapshot.last_updated_at.is_(None),
                IndexSnapshot.last_updated_at < excluded.last_updated_at,
            ),
        )

    async def upsert_many(self, quotes: Iterable[IndexQuote], is_market_open: bool = True) -> int:
        """
        Write many snapshots in one statement.

        If the batch statement fails, each row is retried on its own so one
        bad symbol does not cost the others. Returns rows written.
        """
        values = list({q.symbol: _row_values(q, is_market_open) for q in quotes}.values())
        if not values:
            return 0

        async with self._session_factory() as session:
            try:
                await session.execute(self._upsert_statement(session, values))
                await session.commit()
                return len(values)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.warning(f"Batch snapshot upsert failed, retrying per symbol: {e}")

            written = 0
            for row in values:
                try:
                    await session.execute(self._upsert_statement(session, [row]))
                    await session.commit()
                    written += 1
                except SQLAlchemyError as e:
                    await session.rollback()
                    logger.error(f"Snapshot upsert failed for {row['symbol']}: {e}")
            return written

    async def seed(self, definitions: Iterable[dict]) -> int:
        """Create placeholder rows for known symbols; existing rows are kept."""
        values = [
            {
                "symbol": d["symbol"],
                "display_name": d["display_name"],
                "value": 0.0,
                "change": 0.0,
                "percent_change": 0.0,
                "last_updated_at": None,
                "is_market_open_at_capture": False,
            }
            for d in definitions
        ]
        if not values:
            return 0
        async with self._session_factory() as session:
            stmt = dialect_insert(session, IndexSnapshot).values(values)
            stmt = stmt.on_conflict_do_nothing(index_elements=["symbol"])
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    async def all(self) -> List[IndexSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(select(IndexSnapshot).order_by(IndexSnapshot.symbol))
            return list(result.scalars().all())

    async def get(self, symbol: str) -> Optional[IndexSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IndexSnapshot).where(IndexSnapshot.symbol == symbol.upper())
            )
            return result.scalar_one_or_none()

    async def get_major(self) -> List[IndexSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IndexSnapshot).where(IndexSnapshot.symbol.in_(MAJOR_INDICES))
            )
            rows = {row.symbol: row for row in result.scalars().all()}
        return [rows[symbol] for symbol in MAJOR_INDICES if symbol in rows]

    async def is_data_stale(self, max_age_minutes: int = 10) -> bool:
        """True if no snapshot has been written in the last ``max_age_minutes``."""
        cutoff = to_naive_utc(self._clock()) - timedelta(minutes=max_age_minutes)
        async with self._session_factory() as session:
            result = await session.execute(
                select(IndexSnapshot.id)
                .where(IndexSnapshot.last_updated_at >= cutoff)
                .limit(1)
            )
            return result.first() is None
