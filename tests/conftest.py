"""
Pytest fixtures for testing Research Club.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from research_club.app.exporter import SpreadsheetExporter
from research_club.core.config import Settings
from research_club.core.models import Granularity, StockAggregate
from research_club.core.storage import KeyValueStore

FIXED_TODAY = date(2024, 1, 10)


@pytest.fixture
def fixed_today():
    """Callable returning a fixed 'today' for date validation."""
    return lambda: FIXED_TODAY


@pytest.fixture
def test_settings(tmp_path):
    """Settings isolated to a temporary data directory."""
    return Settings(
        data_dir=tmp_path / "data",
        use_mock_data=True,
        massive_api_key=None,
        gemini_api_key=None,
        display_timezone="UTC",
    )


@pytest.fixture
def sample_aggregate():
    """Create a sample StockAggregate for testing."""
    return StockAggregate(
        ticker="AAPL",
        timestamp=datetime(2024, 1, 2, 14, 30, tzinfo=timezone.utc),
        open=185.5,
        high=186.25,
        low=185.1,
        close=186.0,
        volume=120000,
        granularity_minutes=5,
    )


@pytest.fixture
def make_aggregates():
    """Factory building ``count`` consecutive valid bars."""

    def _make(count=5, ticker="AAPL", granularity=Granularity.FIVE_MINUTES,
              start=datetime(2024, 1, 2, 14, 30, tzinfo=timezone.utc)):
        bars = []
        for i in range(count):
            open_ = 100.0 + i
            bars.append(
                StockAggregate(
                    ticker=ticker,
                    timestamp=start + timedelta(minutes=i * granularity.minutes),
                    open=open_,
                    high=open_ + 1.25,
                    low=open_ - 0.75,
                    close=open_ + 0.5,
                    volume=1000 * (i + 1),
                    granularity_minutes=granularity.minutes,
                )
            )
        return bars

    return _make


@pytest.fixture
def exporter(tmp_path):
    """Spreadsheet exporter writing into a temporary directory (UTC timestamps)."""
    return SpreadsheetExporter(tmp_path / "exports", tz=timezone.utc)


@pytest.fixture
def kv_store(tmp_path):
    """Key-value store backed by a temporary file."""
    return KeyValueStore(tmp_path / "preferences.json")
