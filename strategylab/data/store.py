"""Primary bar provider backed by the SQL historical data warehouse.

Queries `historical_bars` and `options_flow` through an explicitly passed
async session factory. Rows that violate the Bar invariant are dropped with
a warning rather than failing the whole query.

Usage:
    from strategylab.common.database import get_session_factory
    from strategylab.data.store import DatabaseBarProvider

    provider = DatabaseBarProvider(get_session_factory())
    bars = await provider.fetch_bars("SPY", "1m", start_ms, end_ms)
"""

from __future__ import annotations

import asyncio

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from strategylab.common.exceptions import FetchError
from strategylab.common.logging import get_logger
from strategylab.common.schemas import Bar, FlowEvent
from strategylab.data.base import normalize_bars
from strategylab.data.models import HistoricalBarRow, OptionsFlowRow

logger = get_logger("DATA")

# A refused or timed-out asyncpg connection can surface without a SQLAlchemy wrapper.
STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


class DatabaseBarProvider:
    """Reads bars and flow events from the primary SQL store.

    Args:
        session_factory: Async session factory bound to the warehouse database.
    """

    name = "database"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def fetch_bars(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> list[Bar]:
        """Fetch stored bars ordered by timestamp.

        Raises:
            FetchError: If the database query fails.
        """
        query = (
            select(HistoricalBarRow)
            .where(
                HistoricalBarRow.symbol == symbol,
                HistoricalBarRow.timeframe == timeframe,
                HistoricalBarRow.timestamp >= start_ms,
                HistoricalBarRow.timestamp <= end_ms,
            )
            .order_by(HistoricalBarRow.timestamp.asc())
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                rows = list(result.scalars().all())
        except STORE_ERRORS as exc:
            raise FetchError(
                f"Database query failed for {symbol} {timeframe}",
                context={"symbol": symbol, "timeframe": timeframe, "error": str(exc)},
            ) from exc

        bars: list[Bar] = []
        dropped = 0
        for row in rows:
            try:
                bars.append(
                    Bar(
                        timestamp=row.timestamp,
                        open=row.open,
                        high=row.high,
                        low=row.low,
                        close=row.close,
                        volume=row.volume or 0.0,
                        vwap=row.vwap,
                        trades=row.trades,
                    )
                )
            except ValidationError:
                dropped += 1

        if dropped:
            logger.warning(
                "Dropped malformed stored bars",
                extra={"data": {"symbol": symbol, "timeframe": timeframe, "dropped": dropped}},
            )

        return normalize_bars(bars)

    async def fetch_flow(self, symbol: str, start_ms: int, end_ms: int) -> list[FlowEvent]:
        """Fetch stored flow events ordered by timestamp (unfiltered).

        Raises:
            FetchError: If the database query fails.
        """
        query = (
            select(OptionsFlowRow)
            .where(
                OptionsFlowRow.symbol == symbol,
                OptionsFlowRow.timestamp >= start_ms,
                OptionsFlowRow.timestamp <= end_ms,
            )
            .order_by(OptionsFlowRow.timestamp.asc())
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                rows = list(result.scalars().all())
        except STORE_ERRORS as exc:
            raise FetchError(
                f"Flow query failed for {symbol}",
                context={"symbol": symbol, "error": str(exc)},
            ) from exc

        events: list[FlowEvent] = []
        for row in rows:
            try:
                events.append(
                    FlowEvent(
                        symbol=row.symbol,
                        timestamp=row.timestamp,
                        side=row.side,
                        classification=row.classification,
                        premium=row.premium,
                        size=row.size,
                        strike=row.strike,
                        option_type=row.option_type,
                    )
                )
            except ValidationError:
                logger.warning(
                    "Skipping malformed flow row",
                    extra={"data": {"symbol": symbol, "row_id": row.id}},
                )
        return events
