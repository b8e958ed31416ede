from sqlalchemy import Column, String, Integer, Float, Boolean, Date, DateTime, Text, UniqueConstraint, Index, JSON
from datetime import datetime
from navpulse.db.database import Base


class Fund(Base):
    """Fund registry row; only the fields the pipeline joins on."""
    __tablename__ = "funds"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    amfi_code = Column(String(20), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class IndexSnapshot(Base):
    """Latest value per index symbol. Overwritten in place, no history."""
    __tablename__ = "index_snapshots"

    id = Column(Integer, primary_key=True)
    symbol = Column(String(30), unique=True, index=True, nullable=False)
    display_name = Column(String(100), nullable=False)
    value = Column(Float, nullable=False, default=0.0)
    change = Column(Float, nullable=False, default=0.0)
    percent_change = Column(Float, nullable=False, default=0.0)
    open = Column(Float)
    high = Column(Float)
    low = Column(Float)
    previous_close = Column(Float)
    last_updated_at = Column(DateTime, nullable=True)  # Fetch time of the stored value (UTC)
    is_market_open_at_capture = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_index_snapshots_last_updated_at", "last_updated_at"),
    )


class IndexHistoryPoint(Base):
    """
    Index time series.

    Intraday points carry ``expires_at = timestamp + retention``; daily points
    have no expiry. Reads filter on ``expires_at`` so expiry holds even if the
    maintenance sweep falls behind.
    """
    __tablename__ = "index_history_points"

    id = Column(Integer, primary_key=True)
    symbol = Column(String(30), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    date = Column(Date, nullable=False)  # Exchange-local day bucket
    granularity = Column(String(10), nullable=False)  # intraday | daily
    value = Column(Float, nullable=False)
    change = Column(Float, nullable=False, default=0.0)
    percent_change = Column(Float, nullable=False, default=0.0)
    open = Column(Float)
    high = Column(Float)
    low = Column(Float)
    close = Column(Float)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("symbol", "timestamp", "granularity", name="uq_index_history_symbol_ts_granularity"),
        Index("ix_index_history_symbol_granularity_ts", "symbol", "granularity", "timestamp"),
        Index("ix_index_history_symbol_date", "symbol", "date"),
        Index(
            "ix_index_history_expires_at",
            expires_at,
            postgresql_where=expires_at.isnot(None),
            sqlite_where=expires_at.isnot(None),
        ),
    )


class NavRecord(Base):
    """Daily NAV per fund, retained for the NAV retention window."""
    __tablename__ = "nav_records"

    id = Column(Integer, primary_key=True)
    fund_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)
    nav = Column(Float, nullable=False)
    amfi_code = Column(String(20), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("fund_id", "date", name="uq_nav_fund_date"),
        Index("ix_nav_records_fund_date", "fund_id", "date"),
        Index("ix_nav_records_amfi_date", "amfi_code", "date"),
        Index(
            "ix_nav_records_expires_at",
            expires_at,
            postgresql_where=expires_at.isnot(None),
            sqlite_where=expires_at.isnot(None),
        ),
    )


class ReturnsSnapshot(Base):
    """Latest computed 1Y/3Y/5Y returns per fund."""
    __tablename__ = "returns_snapshots"

    id = Column(Integer, primary_key=True)
    fund_id = Column(String(64), unique=True, index=True, nullable=False)
    amfi_code = Column(String(20), nullable=True)
    current_nav = Column(Float, nullable=False)
    nav_date = Column(Date, nullable=False)
    return_1y = Column(Float, nullable=True)
    return_3y = Column(Float, nullable=True)
    return_5y = Column(Float, nullable=True)
    last_calculated_at = Column(DateTime, nullable=False)


class GraphSeries(Base):
    """Weekly down-sampled NAV points for one fund and period."""
    __tablename__ = "graph_series"

    id = Column(Integer, primary_key=True)
    fund_id = Column(String(64), nullable=False)
    period = Column(String(4), nullable=False)  # 1Y | 3Y | 5Y
    points = Column(JSON, nullable=False)  # [{"date": "YYYY-MM-DD", "nav": float}]
    point_count = Column(Integer, nullable=False, default=0)
    last_aggregated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("fund_id", "period", name="uq_graph_fund_period"),
        Index("ix_graph_series_last_aggregated_at", "last_aggregated_at"),
    )


class MarketHoliday(Base):
    """Calendar reference data: holidays and per-day session overrides."""
    __tablename__ = "market_holidays"

    id = Column(Integer, primary_key=True)
    date = Column(Date, unique=True, index=True, nullable=False)
    is_holiday = Column(Boolean, nullable=False, default=True)
    holiday_name = Column(String(100), nullable=True)
    exchange = Column(String(10), nullable=False, default="BOTH")  # NSE | BSE | BOTH
    market_open = Column(String(5), nullable=True)  # HH:MM exchange-local
    market_close = Column(String(5), nullable=True)
    special_note = Column(String(255), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CacheEntry(Base):
    """Durable tier of the tiered cache."""
    __tablename__ = "cache_entries"

    id = Column(Integer, primary_key=True)
    key = Column(String(255), unique=True, index=True, nullable=False)
    value = Column(Text, nullable=False)  # JSON-encoded
    expires_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index(
            "ix_cache_entries_expires_at",
            expires_at,
            postgresql_where=expires_at.isnot(None),
            sqlite_where=expires_at.isnot(None),
        ),
    )
