"""
Unit tests for Pydantic models.
"""

from datetime import date, datetime, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from research_club.core.models import (
    ChatMessage,
    ChatRole,
    Cohort,
    CohortColor,
    FetchMetadata,
    Granularity,
    SavedSpreadsheet,
    StockAggregate,
    TickerDetails,
)


class TestGranularity:
    """Tests for the Granularity enumeration."""

    @pytest.mark.parametrize(
        "granularity,multiplier,timespan,label",
        [
            (Granularity.ONE_MINUTE, 1, "minute", "1minute"),
            (Granularity.FIVE_MINUTES, 5, "minute", "5minutes"),
            (Granularity.FIFTEEN_MINUTES, 15, "minute", "15minutes"),
            (Granularity.THIRTY_MINUTES, 30, "minute", "30minutes"),
            (Granularity.ONE_HOUR, 1, "hour", "1hour"),
        ],
    )
    def test_api_path_segments(self, granularity, multiplier, timespan, label):
        """Test multiplier/timespan pairs and filename labels."""
        assert granularity.multiplier == multiplier
        assert granularity.timespan == timespan
        assert granularity.label == label

    def test_display_names(self):
        """Test human-readable names."""
        assert Granularity.ONE_MINUTE.display_name == "1 minute"
        assert Granularity.THIRTY_MINUTES.display_name == "30 minutes"
        assert Granularity.ONE_HOUR.display_name == "1 hour"

    def test_from_label_is_case_insensitive(self):
        """Test label lookup."""
        assert Granularity.from_label("15Minutes") is Granularity.FIFTEEN_MINUTES
        assert Granularity.from_label("1 hour") is Granularity.ONE_HOUR
        assert Granularity.from_label("weekly") is None

    def test_from_minutes(self):
        """Test width lookup."""
        assert Granularity.from_minutes(60) is Granularity.ONE_HOUR
        with pytest.raises(ValueError):
            Granularity.from_minutes(7)


class TestStockAggregateModel:
    """Tests for the StockAggregate model."""

    def test_valid_aggregate(self, sample_aggregate):
        """Test creating a valid StockAggregate."""
        assert sample_aggregate.ticker == "AAPL"
        assert sample_aggregate.low <= sample_aggregate.close <= sample_aggregate.high
        assert sample_aggregate.granularity_minutes == 5

    def test_ticker_uppercased(self):
        """Test that the ticker is normalized to upper case."""
        bar = StockAggregate(
            ticker=" msft ",
            timestamp=datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc),
            open=10, high=11, low=9, close=10.5, volume=5,
        )
        assert bar.ticker == "MSFT"

    def test_id_derived_from_ticker_seconds_and_granularity(self, sample_aggregate):
        """Test the deterministic bar identity."""
        expected_seconds = int(datetime(2024, 1, 2, 14, 30, tzinfo=timezone.utc).timestamp())
        assert sample_aggregate.id == f"AAPL_{expected_seconds}_5"

    def test_naive_timestamp_becomes_aware(self):
        """Test that naive timestamps are read as local time."""
        bar = StockAggregate(
            ticker="AAPL",
            timestamp=datetime(2024, 1, 2, 9, 30),
            open=10, high=11, low=9, close=10, volume=1,
        )
        assert bar.timestamp.tzinfo is not None

    def test_close_above_high_fails(self):
        """Test that the OHLC range invariant is enforced."""
        with pytest.raises(ValidationError):
            StockAggregate(
                ticker="AAPL",
                timestamp=datetime(2024, 1, 2, 14, 30, tzinfo=timezone.utc),
                open=10, high=11, low=9, close=12, volume=1,
            )

    def test_negative_volume_fails(self):
        """Test that negative volume is rejected."""
        with pytest.raises(ValidationError):
            StockAggregate(
                ticker="AAPL",
                timestamp=datetime(2024, 1, 2, 14, 30, tzinfo=timezone.utc),
                open=10, high=11, low=9, close=10, volume=-1,
            )

    def test_aggregate_is_immutable(self, sample_aggregate):
        """Test that bars cannot be modified after creation."""
        with pytest.raises(ValidationError):
            sample_aggregate.close = 1.0


class TestTickerDetailsModel:
    """Tests for TickerDetails formatting helpers."""

    def test_formatted_values(self):
        details = TickerDetails(
            ticker="AAPL",
            market_cap=2_500_000_000_000,
            share_class_shares_outstanding=15_700_000_000,
            weighted_shares_outstanding=1_234,
        )
        assert details.formatted_market_cap == "$2.5T"
        assert details.formatted_shares_outstanding == "15.7B shares"
        assert details.formatted_weighted_shares_outstanding == "1.23K shares"

    def test_missing_values(self):
        details = TickerDetails(ticker="AAPL")
        assert details.formatted_market_cap is None
        assert details.formatted_shares_outstanding is None

    def test_small_market_cap(self):
        assert TickerDetails(ticker="X", market_cap=999).formatted_market_cap == "$999"


class TestSavedSpreadsheetModel:
    """Tests for the SavedSpreadsheet model."""

    def test_display_name_and_file_name(self):
        spreadsheet = SavedSpreadsheet(
            file_path=Path("/tmp/AAPL_2024-01-02_5minutes.xlsx"),
            ticker="aapl",
            date=date(2024, 1, 2),
            granularity=Granularity.FIVE_MINUTES,
            data_point_count=78,
        )
        assert spreadsheet.display_name == "AAPL_2024-01-02_5minutes"
        assert spreadsheet.file_name == "AAPL_2024-01-02_5minutes.xlsx"
        assert spreadsheet.is_selected_for_llm is False
        assert spreadsheet.id

    def test_negative_count_fails(self):
        with pytest.raises(ValidationError):
            SavedSpreadsheet(
                file_path=Path("x.xlsx"),
                ticker="AAPL",
                date=date(2024, 1, 2),
                granularity=Granularity.ONE_MINUTE,
                data_point_count=-1,
            )


class TestCohortModel:
    """Tests for the Cohort model."""

    def test_defaults(self):
        cohort = Cohort(name="  Tech week ")
        assert cohort.name == "Tech week"
        assert cohort.color is CohortColor.BLUE
        assert cohort.spreadsheet_ids == set()
        assert cohort.description is None
        assert CohortColor.TEAL.display_name == "Teal"

    def test_blank_name_fails(self):
        with pytest.raises(ValidationError):
            Cohort(name="   ")


class TestChatModels:
    """Tests for chat message models."""

    def test_roles(self):
        assert ChatRole.USER.api_role == "user"
        assert ChatRole.ASSISTANT.api_role == "model"
        assert ChatRole.ASSISTANT.display_name == "Gemini"

    def test_message_json_round_trip(self):
        message = ChatMessage(role=ChatRole.USER, content="Hello")
        restored = ChatMessage.model_validate_json(message.model_dump_json())
        assert restored == message


class TestFetchMetadataModel:
    """Tests for the FetchMetadata model."""

    def test_defaults(self):
        metadata = FetchMetadata(
            request_id="abc123",
            generation=1,
            ticker="AAPL",
            source="synthetic",
            latency_ms=1.5,
            success=True,
        )
        assert metadata.applied is False
        assert metadata.error_message is None

    def test_invalid_source_fails(self):
        with pytest.raises(ValidationError):
            FetchMetadata(
                request_id="abc123",
                generation=1,
                ticker="AAPL",
                source="yahoo",
                latency_ms=1.0,
                success=True,
            )
