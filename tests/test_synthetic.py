"""
Tests for the synthetic market data source.
"""

from datetime import date, datetime, timedelta

from research_club.core.models import Granularity
from research_club.data_sources.base import local_day_bounds
from research_club.data_sources.synthetic import SyntheticMarketDataRepository


class TestSyntheticRepository:
    """Tests for SyntheticMarketDataRepository."""

    def test_session_day_five_minute_bars(self):
        """Test a full 04:00-20:00 window on a trading day."""
        repo = SyntheticMarketDataRepository()
        start = datetime(2024, 1, 2, 4, 0)
        end = datetime(2024, 1, 2, 20, 0)

        bars = repo.get_aggregates("aapl", start, end, Granularity.FIVE_MINUTES)

        assert len(bars) == 78
        assert all(bar.ticker == "AAPL" for bar in bars)
        assert all(bar.granularity_minutes == 5 for bar in bars)
        assert all(bar.low <= bar.open <= bar.high for bar in bars)
        assert all(bar.low <= bar.close <= bar.high for bar in bars)
        timestamps = [bar.timestamp for bar in bars]
        assert timestamps == sorted(timestamps)
        assert timestamps[1] - timestamps[0] == timedelta(minutes=5)

    def test_deterministic(self):
        """Test that identical requests return identical bars."""
        day = date(2024, 1, 3)
        first = SyntheticMarketDataRepository().get_aggregates_for_date("MSFT", day, Granularity.FIFTEEN_MINUTES)
        second = SyntheticMarketDataRepository().get_aggregates_for_date("MSFT", day, Granularity.FIFTEEN_MINUTES)
        assert first == second

    def test_seed_changes_output(self):
        day = date(2024, 1, 3)
        first = SyntheticMarketDataRepository("a").get_aggregates_for_date("MSFT", day, Granularity.ONE_HOUR)
        second = SyntheticMarketDataRepository("b").get_aggregates_for_date("MSFT", day, Granularity.ONE_HOUR)
        assert [bar.close for bar in first] != [bar.close for bar in second]

    def test_hour_bars(self):
        bars = SyntheticMarketDataRepository().get_aggregates_for_date(
            "AAPL", date(2024, 1, 2), Granularity.ONE_HOUR
        )
        assert len(bars) == 6

    def test_weekend_is_empty(self):
        assert SyntheticMarketDataRepository().get_aggregates_for_date(
            "AAPL", date(2024, 1, 6), Granularity.FIVE_MINUTES
        ) == []

    def test_bars_within_requested_window(self):
        start = datetime(2024, 1, 2, 10, 0)
        end = datetime(2024, 1, 2, 11, 0)
        bars = SyntheticMarketDataRepository().get_aggregates("AAPL", start, end, Granularity.FIVE_MINUTES)
        assert len(bars) == 12
        assert all(start.astimezone() <= bar.timestamp < end.astimezone() for bar in bars)

    def test_ticker_details(self):
        details = SyntheticMarketDataRepository().get_ticker_details("aapl")
        assert details.ticker == "AAPL"
        assert details.formatted_market_cap == "$1.5T"
        assert details.formatted_shares_outstanding == "15B shares"


class TestLocalDayBounds:
    """Tests for the local day window helper."""

    def test_bounds_cover_one_day(self):
        start, end = local_day_bounds(date(2024, 1, 2))
        assert start.tzinfo is not None
        assert start.date() == date(2024, 1, 2)
        assert end.date() == date(2024, 1, 3)
        assert (start.hour, start.minute) == (0, 0)
