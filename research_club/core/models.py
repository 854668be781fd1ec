"""
Pydantic models for stock data.
Defines Granularity, StockAggregate, TickerDetails, SavedSpreadsheet, Cohort,
ChatMessage and FetchMetadata models.
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Literal, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Granularity(int, Enum):
    """Bar widths supported by the aggregates endpoint, in minutes."""

    ONE_MINUTE = 1
    FIVE_MINUTES = 5
    FIFTEEN_MINUTES = 15
    THIRTY_MINUTES = 30
    ONE_HOUR = 60

    @property
    def minutes(self) -> int:
        return int(self.value)

    @property
    def display_name(self) -> str:
        if self.minutes >= 60:
            hours = self.minutes // 60
            return f"{hours} hour" if hours == 1 else f"{hours} hours"
        return "1 minute" if self.minutes == 1 else f"{self.minutes} minutes"

    @property
    def label(self) -> str:
        """Display name without spaces, as used in export filenames."""
        return self.display_name.replace(" ", "")

    @property
    def timespan(self) -> str:
        return "hour" if self.minutes >= 60 else "minute"

    @property
    def multiplier(self) -> int:
        return self.minutes // 60 if self.minutes >= 60 else self.minutes

    @classmethod
    def from_label(cls, label: str) -> Optional["Granularity"]:
        """Resolve a filename label such as ``5minutes`` (case-insensitive)."""
        wanted = label.replace(" ", "").lower()
        for granularity in cls:
            if granularity.label.lower() == wanted:
                return granularity
        return None

    @classmethod
    def from_minutes(cls, minutes: int) -> "Granularity":
        return cls(int(minutes))


DEFAULT_GRANULARITY = Granularity.FIVE_MINUTES


def as_aware(value: datetime) -> datetime:
    """Attach the local zone to naive datetimes, leave aware ones untouched."""
    if value.tzinfo is None:
        return value.astimezone()
    return value


class StockAggregate(BaseModel):
    """OHLCV candlestick bar for one granularity interval."""

    model_config = ConfigDict(frozen=True)

    ticker: str = Field(..., min_length=1, description="Stock ticker symbol")
    timestamp: datetime = Field(..., description="Bar start instant")
    open: float = Field(..., ge=0, description="Opening price")
    high: float = Field(..., ge=0, description="Highest price")
    low: float = Field(..., ge=0, description="Lowest price")
    close: float = Field(..., ge=0, description="Closing price")
    volume: int = Field(..., ge=0, description="Trading volume")
    granularity_minutes: int = Field(default=1, gt=0, description="Bar width in minutes")
    volume_weighted: Optional[float] = Field(
        default=None, description="Volume weighted average price"
    )
    transaction_count: Optional[int] = Field(
        default=None, ge=0, description="Number of transactions in the bar"
    )

    @field_validator("ticker")
    @classmethod
    def _upper_ticker(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return as_aware(value)

    @model_validator(mode="after")
    def _check_price_range(self) -> "StockAggregate":
        if not (self.low <= self.open <= self.high and self.low <= self.close <= self.high):
            raise ValueError(
                f"OHLC out of range for {self.ticker} at {self.timestamp.isoformat()}: "
                f"low={self.low} open={self.open} close={self.close} high={self.high}"
            )
        return self

    @property
    def id(self) -> str:
        return f"{self.ticker}_{int(self.timestamp.timestamp())}_{self.granularity_minutes}"


def _format_large_number(number: float, include_dollar_sign: bool = True) -> str:
    prefix = "$" if include_dollar_sign else ""
    for threshold, suffix in (
        (1_000_000_000_000, "T"),
        (1_000_000_000, "B"),
        (1_000_000, "M"),
        (1_000, "K"),
    ):
        if number >= threshold:
            scaled = f"{number / threshold:,.2f}".rstrip("0").rstrip(".")
            return f"{prefix}{scaled}{suffix}"
    return f"{prefix}{f'{number:,.2f}'.rstrip('0').rstrip('.')}"


class TickerDetails(BaseModel):
    """Reference data for a ticker (market cap and share counts)."""

    ticker: str = Field(..., description="Stock ticker symbol")
    market_cap: Optional[float] = Field(default=None, ge=0)
    share_class_shares_outstanding: Optional[int] = Field(default=None, ge=0)
    weighted_shares_outstanding: Optional[int] = Field(default=None, ge=0)

    @property
    def formatted_market_cap(self) -> Optional[str]:
        if self.market_cap is None:
            return None
        return _format_large_number(self.market_cap)

    @property
    def formatted_shares_outstanding(self) -> Optional[str]:
        if self.share_class_shares_outstanding is None:
            return None
        return _format_large_number(self.share_class_shares_outstanding, False) + " shares"

    @property
    def formatted_weighted_shares_outstanding(self) -> Optional[str]:
        if self.weighted_shares_outstanding is None:
            return None
        return _format_large_number(self.weighted_shares_outstanding, False) + " shares"


class SavedSpreadsheet(BaseModel):
    """Metadata describing one exported spreadsheet file."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    file_path: Path
    ticker: str
    date: date
    granularity: Granularity
    data_point_count: int = Field(..., ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_selected_for_llm: bool = False

    @property
    def display_name(self) -> str:
        return f"{self.ticker.upper()}_{self.date:%Y-%m-%d}_{self.granularity.label}"

    @property
    def file_name(self) -> str:
        return self.file_path.name


class CohortColor(str, Enum):
    BLUE = "blue"
    PURPLE = "purple"
    GREEN = "green"
    ORANGE = "orange"
    RED = "red"
    PINK = "pink"
    TEAL = "teal"
    INDIGO = "indigo"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class Cohort(BaseModel):
    """A named group of exported spreadsheets studied together."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., min_length=1)
    color: CohortColor = CohortColor.BLUE
    spreadsheet_ids: Set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Cohort name cannot be empty")
        return stripped


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"

    @property
    def display_name(self) -> str:
        return "You" if self is ChatRole.USER else "Gemini"

    @property
    def api_role(self) -> str:
        """Role name expected by the Gemini API."""
        return "user" if self is ChatRole.USER else "model"


class ChatMessage(BaseModel):
    """One turn of a conversation with the chat assistant."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: ChatRole
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class FetchMetadata(BaseModel):
    """Metadata for tracking aggregate fetch requests."""

    request_id: str = Field(..., description="Unique request identifier")
    generation: int = Field(..., ge=1, description="Session fetch sequence number")
    ticker: str = Field(..., description="Ticker being fetched")
    source: Literal["massive", "synthetic", "none"] = Field(..., description="Data source")
    latency_ms: float = Field(..., ge=0, description="Request latency in milliseconds")
    success: bool = Field(..., description="Whether the request succeeded")
    applied: bool = Field(
        default=False, description="Whether the result became the current result set"
    )
    result_count: int = Field(default=0, ge=0)
    error_message: Optional[str] = Field(
        default=None, description="Error message if failed"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Request timestamp"
    )
