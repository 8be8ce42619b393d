"""SQLAlchemy ORM models for the primary historical data store.

Read-only from this package's point of view: rows are written by the
ingestion jobs, the backtester only queries them.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, Float, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for the historical data tables."""


class HistoricalBarRow(Base):
    """One OHLCV bar as stored in the `historical_bars` table."""

    __tablename__ = "historical_bars"
    __table_args__ = (Index("ix_historical_bars_lookup", "symbol", "timeframe", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(16))
    timeframe: Mapped[str] = mapped_column(String(8))
    timestamp: Mapped[int] = mapped_column(BigInteger)  # epoch ms
    open: Mapped[float] = mapped_column(Float)
    high: Mapped[float] = mapped_column(Float)
    low: Mapped[float] = mapped_column(Float)
    close: Mapped[float] = mapped_column(Float)
    volume: Mapped[float] = mapped_column(Float, default=0.0)
    vwap: Mapped[float | None] = mapped_column(Float, nullable=True)
    trades: Mapped[int | None] = mapped_column(Integer, nullable=True)


class OptionsFlowRow(Base):
    """One sweep/block record as stored in the `options_flow` table."""

    __tablename__ = "options_flow"
    __table_args__ = (Index("ix_options_flow_lookup", "symbol", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(16))
    timestamp: Mapped[int] = mapped_column(BigInteger)  # epoch ms
    side: Mapped[str] = mapped_column(String(8))
    classification: Mapped[str] = mapped_column(String(16))
    premium: Mapped[float] = mapped_column(Float)
    size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    strike: Mapped[float | None] = mapped_column(Float, nullable=True)
    option_type: Mapped[str | None] = mapped_column(String(4), nullable=True)
