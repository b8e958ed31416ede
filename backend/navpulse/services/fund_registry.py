"""Fund registry: which funds exist, which are active, and their AMFI codes."""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from sqlalchemy import select

from navpulse.db.database import dialect_insert
from navpulse.db.models import Fund
from navpulse.services.models import FundRef, NavEntry, NavQuote


class FundRegistry:

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def find_active_funds(self, offset: int = 0, limit: Optional[int] = None) -> List[FundRef]:
        """Active funds ordered by id; page with ``offset``/``limit``."""
        stmt = select(Fund.id, Fund.amfi_code).where(Fund.is_active.is_(True)).order_by(Fund.id)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [FundRef(id=row.id, amfi_code=row.amfi_code) for row in result.all()]

    async def match_nav_quotes(self, quotes: Iterable[NavQuote]) -> List[NavEntry]:
        """
        Inner join of AMFI rows onto active funds by AMFI code.

        Codes with no fund are dropped; funds with no row get nothing.
        """
        funds_by_code: Dict[str, List[str]] = {}
        for fund in await self.find_active_funds():
            if fund.amfi_code:
                funds_by_code.setdefault(fund.amfi_code, []).append(fund.id)

        matched: List[NavEntry] = []
        for quote in quotes:
            for fund_id in funds_by_code.get(quote.amfi_code, ()):
                matched.append(
                    NavEntry(fund_id=fund_id, date=quote.date, nav=quote.nav, amfi_code=quote.amfi_code)
                )
        return matched

    async def register(self, funds: Iterable[dict]) -> int:
        """Insert or update funds given as ``{"id", "name", "amfi_code", "is_active"}``."""
        values = [
            {
                "id": f["id"],
                "name": f.get("name", f["id"]),
                "amfi_code": f.get("amfi_code"),
                "is_active": f.get("is_active", True),
            }
            for f in funds
        ]
        if not values:
            return 0
        async with self._session_factory() as session:
            stmt = dialect_insert(session, Fund).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "name": stmt.excluded.name,
                    "amfi_code": stmt.excluded.amfi_code,
                    "is_active": stmt.excluded.is_active,
                },
            )
            await session.execute(stmt)
            await session.commit()
        return len(values)
