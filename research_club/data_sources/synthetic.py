"""
Synthetic market data source.
Generates deterministic OHLCV bars for development and tests without network access.
"""

import random
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from loguru import logger

from research_club.core.models import Granularity, StockAggregate, TickerDetails, as_aware

from .base import MarketDataRepository

SESSION_OPEN = time(9, 30)
SESSION_MINUTES = 390  # 09:30 to 16:00


class SyntheticMarketDataRepository(MarketDataRepository):
    """
    Deterministic stand-in for the live API.
    Bars cover regular session hours on weekdays; identical requests return identical bars.
    """

    source_name = "synthetic"

    def __init__(self, seed: str = "research-club"):
        self.seed = seed

    def _bars_for_day(
        self, ticker: str, day: date, granularity: Granularity
    ) -> List[StockAggregate]:
        rng = random.Random(f"{self.seed}|{ticker}|{day.isoformat()}|{granularity.minutes}")
        session_start = datetime.combine(day, SESSION_OPEN).astimezone()
        base_price = rng.uniform(100, 200)

        bars = []
        for index in range(SESSION_MINUTES // granularity.minutes):
            open_ = base_price + rng.uniform(-2, 2)
            high = open_ + rng.uniform(0, 1.5)
            low = max(0.01, open_ - rng.uniform(0, 1.5))
            close = rng.uniform(low, high)
            bars.append(
                StockAggregate(
                    ticker=ticker,
                    timestamp=session_start + timedelta(minutes=index * granularity.minutes),
                    open=round(open_, 4),
                    high=round(high, 4),
                    low=round(low, 4),
                    close=round(close, 4),
                    volume=rng.randint(1000, 100000) * granularity.minutes,
                    granularity_minutes=granularity.minutes,
                )
            )
        return bars

    def get_aggregates(
        self,
        ticker: str,
        start: datetime,
        end: datetime,
        granularity: Granularity,
    ) -> List[StockAggregate]:
        ticker_upper = ticker.strip().upper()
        start, end = as_aware(start), as_aware(end)

        aggregates = []
        day = start.astimezone().date()
        last_day = end.astimezone().date()
        while day <= last_day:
            if day.weekday() < 5:
                aggregates.extend(
                    bar
                    for bar in self._bars_for_day(ticker_upper, day, granularity)
                    if start <= bar.timestamp < end
                )
            day += timedelta(days=1)

        logger.info(f"Generated {len(aggregates)} synthetic bars for {ticker_upper}")
        return aggregates

    def get_ticker_details(
        self, ticker: str, on_date: Optional[date] = None
    ) -> TickerDetails:
        return TickerDetails(
            ticker=ticker.strip().upper(),
            market_cap=1_500_000_000_000,
            share_class_shares_outstanding=15_000_000_000,
            weighted_shares_outstanding=15_000_000_000,
        )
