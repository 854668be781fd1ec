"""
Market data repository interface.
Live and synthetic data sources implement this so callers can swap them.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from research_club.core.models import Granularity, StockAggregate, TickerDetails


def local_day_bounds(day: date) -> tuple[datetime, datetime]:
    """Return local start-of-day for ``day`` and the start of the next day."""
    start = datetime.combine(day, time.min).astimezone()
    end = datetime.combine(day + timedelta(days=1), time.min).astimezone()
    return start, end


class MarketDataRepository(ABC):
    """Source of OHLCV aggregates and ticker reference data."""

    source_name: str = "none"

    @abstractmethod
    def get_aggregates(
        self,
        ticker: str,
        start: datetime,
        end: datetime,
        granularity: Granularity,
    ) -> List[StockAggregate]:
        """Fetch aggregates for ``ticker`` between ``start`` and ``end``."""

    def get_aggregates_for_date(
        self,
        ticker: str,
        day: date,
        granularity: Granularity,
    ) -> List[StockAggregate]:
        """Fetch aggregates for a single local calendar day."""
        start, end = local_day_bounds(day)
        return self.get_aggregates(ticker, start, end, granularity)

    @abstractmethod
    def get_ticker_details(
        self, ticker: str, on_date: Optional[date] = None
    ) -> TickerDetails:
        """Fetch market cap and share counts for ``ticker``."""

    def close(self) -> None:
        """Release any held resources."""
