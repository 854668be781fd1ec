"""
Massive (formerly Polygon.io) REST API data source.
Primary data source for stock aggregates and ticker reference data.
Uses httpx for HTTP requests and pydantic for response decoding.
"""

from datetime import date, datetime, timezone
from typing import Any, List, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from research_club.core.config import settings
from research_club.core.logging import redact_url
from research_club.core.models import Granularity, StockAggregate, TickerDetails, as_aware

from .base import MarketDataRepository

# Substrings the OS resolver puts in connection errors when DNS lookup fails
_DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated",
)


class MassiveRepositoryError(Exception):
    """Base exception for Massive API failures."""
    pass


class MassiveNetworkError(MassiveRepositoryError):
    """The request never produced an HTTP response (DNS, connectivity, timeout)."""
    pass


class MassiveDecodeError(MassiveRepositoryError):
    """The API answered with a body we could not decode."""
    pass


class MassiveAPIError(MassiveRepositoryError):
    """The API answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class MassiveAuthError(MassiveAPIError):
    """The API key was missing, invalid, or lacks access to the resource."""
    pass


class MassiveBadRequestError(MassiveAPIError):
    """The API rejected the request parameters."""
    pass


# ============================================================================
# Response models
# ============================================================================

class AggregateResult(BaseModel):
    """One bar as returned by the aggregates endpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp_ms: int = Field(..., alias="t")
    open: float = Field(..., alias="o")
    high: float = Field(..., alias="h")
    low: float = Field(..., alias="l")
    close: float = Field(..., alias="c")
    volume: float = Field(..., alias="v")
    volume_weighted: Optional[float] = Field(default=None, alias="vw")
    transaction_count: Optional[int] = Field(default=None, alias="n")


class AggregatesResponse(BaseModel):
    """Envelope of the aggregates endpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ticker: Optional[str] = None
    query_count: Optional[int] = Field(default=None, alias="queryCount")
    results_count: Optional[int] = Field(default=None, alias="resultsCount")
    adjusted: Optional[bool] = None
    status: Optional[str] = None
    results: Optional[List[AggregateResult]] = None


class TickerDetailsResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ticker: str
    market_cap: Optional[float] = None
    share_class_shares_outstanding: Optional[float] = None
    weighted_shares_outstanding: Optional[float] = None


class TickerDetailsResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: Optional[str] = None
    results: Optional[TickerDetailsResult] = None


# ============================================================================
# Repository
# ============================================================================

class MassiveRepository(MarketDataRepository):
    """
    Live market data repository backed by the Massive REST API.
    Sends the API key both as the X-API-KEY header and the apikey query parameter.
    """

    source_name = "massive"

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        limit: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not api_key or not api_key.strip():
            raise MassiveAuthError(401, "Massive API key is not configured")

        self.api_key = api_key.strip()
        self.base_url = (base_url or settings.massive_base_url).rstrip("/")
        self.timeout = timeout or settings.request_timeout_seconds
        self.limit = limit or settings.aggregates_limit
        self._client = httpx.Client(
            timeout=self.timeout,
            headers={"X-API-KEY": self.api_key, "Accept": "application/json"},
            transport=transport,
        )

    def __enter__(self) -> "MassiveRepository":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request_json(self, path: str, params: dict[str, Any]) -> Any:
        """
        Issue a GET request and decode its JSON body.

        Args:
            path: Endpoint path below the base URL
            params: Query parameters (the API key is appended)

        Returns:
            Decoded JSON body

        Raises:
            MassiveNetworkError: If no response was received
            MassiveAPIError: If the response status is not 2xx
            MassiveDecodeError: If the body is not JSON
        """
        request = self._client.build_request(
            "GET", f"{self.base_url}{path}", params={**params, "apikey": self.api_key}
        )
        logger.debug(f"Massive request: {redact_url(str(request.url))}")

        try:
            response = self._client.send(request)
        except httpx.TimeoutException as e:
            logger.error(f"Massive request timed out after {self.timeout}s: {e}")
            raise MassiveNetworkError(
                f"Request timed out after {self.timeout:g} seconds"
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Massive network error: {e}")
            raise MassiveNetworkError(self._network_hint(e)) from e

        logger.debug(f"Massive response: HTTP {response.status_code} for {path}")

        if not response.is_success:
            logger.error(f"Massive API error response ({response.status_code}): {response.text[:1000]}")
            raise self._error_for_status(response)

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Massive returned a non-JSON body: {response.text[:1000]}")
            raise MassiveDecodeError("Invalid response from API") from e

    def _network_hint(self, error: httpx.RequestError) -> str:
        text = str(error)
        if any(marker in text.lower() for marker in _DNS_FAILURE_MARKERS):
            return (
                f"Network error: DNS resolution failed for {self.base_url}. "
                "Check your internet connection, try 'https://api.massive.com' instead of "
                "'https://api.polygon.io', and check that no firewall blocks the connection."
            )
        return f"Network error: {text or type(error).__name__}"

    @staticmethod
    def _error_for_status(response: httpx.Response) -> MassiveAPIError:
        status = response.status_code
        detail = ""
        try:
            body = response.json()
            if isinstance(body, dict):
                detail = body.get("error") or body.get("message") or ""
        except ValueError:
            pass
        suffix = f": {detail}" if detail else ""

        if status in (401, 403):
            return MassiveAuthError(status, f"Unauthorized (HTTP {status}). Check your Massive API key{suffix}")
        if status == 400:
            return MassiveBadRequestError(status, f"Bad request (HTTP 400){suffix}")
        return MassiveAPIError(status, f"API error with status code: {status}{suffix}")

    def get_aggregates(
        self,
        ticker: str,
        start: datetime,
        end: datetime,
        granularity: Granularity,
    ) -> List[StockAggregate]:
        """
        Get OHLCV aggregates for a ticker.

        Args:
            ticker: Stock ticker symbol (upper-cased before the request)
            start: Range start (naive values are local time)
            end: Range end
            granularity: Bar width

        Returns:
            List of StockAggregate objects in API order

        Raises:
            MassiveRepositoryError: If the request or decoding fails
        """
        ticker_upper = ticker.strip().upper()
        from_ms = int(as_aware(start).timestamp() * 1000)
        to_ms = int(as_aware(end).timestamp() * 1000)
        path = (
            f"/v2/aggs/ticker/{ticker_upper}/range/"
            f"{granularity.multiplier}/{granularity.timespan}/{from_ms}/{to_ms}"
        )
        params = {"adjusted": "true", "sort": "asc", "limit": str(self.limit)}

        data = self._request_json(path, params)

        try:
            payload = AggregatesResponse.model_validate(data)
        except ValidationError as e:
            logger.error(f"Unexpected aggregates payload for {ticker_upper}: {str(data)[:1000]}")
            raise MassiveDecodeError("Invalid response from API") from e

        if not payload.results:
            logger.info(f"No aggregates returned for {ticker_upper}")
            return []

        aggregates = []
        for result in payload.results:
            try:
                aggregates.append(
                    StockAggregate(
                        ticker=ticker_upper,
                        timestamp=datetime.fromtimestamp(result.timestamp_ms / 1000.0, tz=timezone.utc),
                        open=result.open,
                        high=result.high,
                        low=result.low,
                        close=result.close,
                        volume=int(result.volume),
                        granularity_minutes=granularity.minutes,
                        volume_weighted=result.volume_weighted,
                        transaction_count=result.transaction_count,
                    )
                )
            except ValidationError as e:
                logger.warning(f"Skipping malformed bar for {ticker_upper} at t={result.timestamp_ms}: {e}")

        logger.info(f"Retrieved {len(aggregates)} {granularity.display_name} bars for {ticker_upper}")
        return aggregates

    def get_ticker_details(
        self, ticker: str, on_date: Optional[date] = None
    ) -> TickerDetails:
        """
        Get market cap and share counts for a ticker.

        Args:
            ticker: Stock ticker symbol
            on_date: Optional point-in-time date for the reference data

        Returns:
            TickerDetails object

        Raises:
            MassiveRepositoryError: If the request or decoding fails
        """
        ticker_upper = ticker.strip().upper()
        params = {}
        if on_date is not None:
            params["date"] = on_date.strftime("%Y-%m-%d")

        data = self._request_json(f"/v3/reference/tickers/{ticker_upper}", params)

        try:
            payload = TickerDetailsResponse.model_validate(data)
        except ValidationError as e:
            logger.error(f"Unexpected ticker details payload for {ticker_upper}: {str(data)[:1000]}")
            raise MassiveDecodeError("Invalid response from API") from e

        if payload.results is None:
            logger.error(f"Ticker details for {ticker_upper} had no results: {str(data)[:1000]}")
            raise MassiveDecodeError(f"No ticker details returned for {ticker_upper}")

        result = payload.results

        def _as_int(value: Optional[float]) -> Optional[int]:
            return int(value) if value is not None else None

        return TickerDetails(
            ticker=result.ticker.upper(),
            market_cap=result.market_cap,
            share_class_shares_outstanding=_as_int(result.share_class_shares_outstanding),
            weighted_shares_outstanding=_as_int(result.weighted_shares_outstanding),
        )
