"""
Use cases wrapping the data sources, credential and cohort storage with business rules.
"""

from datetime import date, datetime
from typing import Callable, List, Optional, Union

from loguru import logger

from research_club.core.models import (
    DEFAULT_GRANULARITY,
    Cohort,
    CohortColor,
    Granularity,
    StockAggregate,
    as_aware,
)
from research_club.core.storage import CohortStore, CredentialStore
from research_club.data_sources.base import MarketDataRepository


class UseCaseError(Exception):
    """Base exception for rejected use case input."""
    pass


class InvalidTickerError(UseCaseError):
    def __init__(self, message: str):
        super().__init__(f"Invalid ticker: {message}")


class InvalidDateError(UseCaseError):
    def __init__(self, message: str):
        super().__init__(f"Invalid date: {message}")


class CredentialManagementError(Exception):
    """Base exception for rejected credentials."""
    pass


class EmptyAPIKeyError(CredentialManagementError):
    def __init__(self):
        super().__init__("API key cannot be empty")


class InvalidAPIKeyError(CredentialManagementError):
    def __init__(self, message: str):
        super().__init__(f"Invalid API key: {message}")


def local_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return as_aware(value).astimezone().date()
    return value


class GetStockAggregatesUseCase:
    """
    Fetch aggregates for a ticker with input validation.
    Results are always returned sorted by timestamp, earliest first.
    """

    def __init__(
        self,
        repository: MarketDataRepository,
        today: Callable[[], date] = date.today,
    ):
        self.repository = repository
        self._today = today

    @staticmethod
    def _normalize_ticker(ticker: str) -> str:
        normalized = (ticker or "").strip().upper()
        if not normalized:
            raise InvalidTickerError("Ticker cannot be empty")
        # The ticker becomes part of export file names
        if "/" in normalized or "\\" in normalized:
            raise InvalidTickerError("Ticker cannot contain '/' or '\\'")
        return normalized

    def _reject_future(self, day: Union[date, datetime]) -> None:
        if local_date(day) > self._today():
            raise InvalidDateError("Cannot fetch data for future dates")

    def execute(
        self,
        ticker: str,
        day: Union[date, datetime],
        granularity: Granularity = DEFAULT_GRANULARITY,
    ) -> List[StockAggregate]:
        """
        Fetch aggregates for one local calendar day.

        Raises:
            InvalidTickerError: If the ticker is blank
            InvalidDateError: If the day lies in the future
        """
        normalized = self._normalize_ticker(ticker)
        self._reject_future(day)

        aggregates = self.repository.get_aggregates_for_date(
            normalized, local_date(day), granularity
        )
        return sorted(aggregates, key=lambda a: a.timestamp)

    def execute_range(
        self,
        ticker: str,
        start: datetime,
        end: datetime,
        granularity: Granularity = DEFAULT_GRANULARITY,
    ) -> List[StockAggregate]:
        """
        Fetch aggregates between two instants.

        Raises:
            InvalidTickerError: If the ticker is blank
            InvalidDateError: If start is after end or in the future
        """
        normalized = self._normalize_ticker(ticker)
        if as_aware(start) > as_aware(end):
            raise InvalidDateError("Start date must be before or equal to end date")
        self._reject_future(start)

        aggregates = self.repository.get_aggregates(normalized, start, end, granularity)
        return sorted(aggregates, key=lambda a: a.timestamp)


class ManageCredentialsUseCase:
    """Validate and persist API credentials."""

    MIN_KEY_LENGTH = 10

    def __init__(self, credential_store: CredentialStore):
        self.credential_store = credential_store

    def validate_api_key(self, api_key: str) -> bool:
        trimmed = (api_key or "").strip()
        return len(trimmed) >= self.MIN_KEY_LENGTH

    def _checked(self, api_key: str) -> str:
        trimmed = (api_key or "").strip()
        if not trimmed:
            raise EmptyAPIKeyError()
        if len(trimmed) < self.MIN_KEY_LENGTH:
            raise InvalidAPIKeyError("API key appears to be too short")
        return trimmed

    def load_saved_credentials(self) -> Optional[str]:
        return self.credential_store.get_api_key()

    def save_credentials(self, api_key: str) -> None:
        self.credential_store.save_api_key(self._checked(api_key))
        logger.info("Saved Massive API key")

    def delete_credentials(self) -> None:
        self.credential_store.delete_api_key()

    def has_saved_credentials(self) -> bool:
        return self.credential_store.has_saved_credentials()

    def load_saved_gemini_credentials(self) -> Optional[str]:
        return self.credential_store.get_gemini_api_key()

    def save_gemini_credentials(self, api_key: str) -> None:
        self.credential_store.save_gemini_api_key(self._checked(api_key))
        logger.info("Saved Gemini API key")

    def delete_gemini_credentials(self) -> None:
        self.credential_store.delete_gemini_api_key()


class CohortError(Exception):
    """Raised for unknown cohorts and invalid cohort changes."""
    pass


class ManageCohortsUseCase:
    """
    Create and maintain named groups of exported spreadsheets.
    Cohorts are addressed by id or by (case-insensitive) name.
    """

    def __init__(self, cohort_store: CohortStore):
        self.cohort_store = cohort_store

    def list_cohorts(self) -> List[Cohort]:
        return self.cohort_store.load()

    def find(self, ref: str) -> Optional[Cohort]:
        wanted = (ref or "").strip()
        for cohort in self.cohort_store.load():
            if cohort.id == wanted or cohort.name.lower() == wanted.lower():
                return cohort
        return None

    def require(self, ref: str) -> Cohort:
        cohort = self.find(ref)
        if cohort is None:
            raise CohortError(f"No cohort named or with id {ref!r}")
        return cohort

    def create_cohort(
        self,
        name: str,
        color: CohortColor = CohortColor.BLUE,
        description: Optional[str] = None,
    ) -> Cohort:
        """
        Create an empty cohort.

        Raises:
            CohortError: If the name is blank or already taken
        """
        trimmed = (name or "").strip()
        if not trimmed:
            raise CohortError("Cohort name cannot be empty")
        if self.find(trimmed) is not None:
            raise CohortError(f"A cohort named {trimmed!r} already exists")

        cohort = Cohort(name=trimmed, color=color, description=description or None)
        self.cohort_store.upsert(cohort)
        logger.info(f"Created cohort {cohort.name} ({cohort.id})")
        return cohort

    def add_spreadsheets(self, ref: str, spreadsheet_ids: List[str]) -> Cohort:
        cohort = self.require(ref)
        updated = cohort.model_copy(
            update={"spreadsheet_ids": cohort.spreadsheet_ids | set(spreadsheet_ids)}
        )
        self.cohort_store.upsert(updated)
        return updated

    def remove_spreadsheets(self, ref: str, spreadsheet_ids: List[str]) -> Cohort:
        cohort = self.require(ref)
        updated = cohort.model_copy(
            update={"spreadsheet_ids": cohort.spreadsheet_ids - set(spreadsheet_ids)}
        )
        self.cohort_store.upsert(updated)
        return updated

    def delete_cohort(self, ref: str) -> None:
        cohort = self.require(ref)
        self.cohort_store.delete(cohort.id)
        logger.info(f"Deleted cohort {cohort.name}")

    def forget_spreadsheet(self, spreadsheet_id: str) -> None:
        """Drop a deleted spreadsheet from every cohort that contains it."""
        cohorts = self.cohort_store.load()
        if any(spreadsheet_id in c.spreadsheet_ids for c in cohorts):
            self.cohort_store.save_all(
                [
                    c.model_copy(update={"spreadsheet_ids": c.spreadsheet_ids - {spreadsheet_id}})
                    for c in cohorts
                ]
            )
