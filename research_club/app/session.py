"""
Research session.
Owns the services of one running application and the current fetch result,
and is the boundary where pipeline errors become user-facing messages.
"""

import threading
import time
import uuid
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from loguru import logger
from pydantic import BaseModel

from research_club.core.config import Settings
from research_club.core.models import (
    DEFAULT_GRANULARITY,
    Cohort,
    FetchMetadata,
    Granularity,
    SavedSpreadsheet,
    StockAggregate,
    TickerDetails,
)
from research_club.core.storage import (
    CohortStore,
    ConversationStore,
    CredentialStore,
    KeyValueStore,
)
from research_club.data_sources.base import MarketDataRepository
from research_club.data_sources.massive import MassiveRepository, MassiveRepositoryError
from research_club.data_sources.synthetic import SyntheticMarketDataRepository
from research_club.llm.chat import ChatSession
from research_club.llm.gemini_client import GeminiClient

from .exporter import ExportError, SpreadsheetExporter
from .use_cases import (
    GetStockAggregatesUseCase,
    InvalidDateError,
    ManageCohortsUseCase,
    ManageCredentialsUseCase,
    UseCaseError,
    local_date,
)


class FetchQuery(BaseModel):
    """Parameters of the fetch that produced the current result set."""

    ticker: str
    day: date
    granularity: Granularity


class ResearchSession:
    """
    Explicitly constructed application services.

    Fetches may overlap (e.g. when issued from worker threads); each one gets a
    generation number and only the most recently issued fetch may replace the
    current result set.
    """

    def __init__(
        self,
        config: Settings,
        repository: Optional[MarketDataRepository] = None,
        today: Callable[[], date] = date.today,
    ):
        self.settings = config
        self._today = today

        self.preferences = KeyValueStore(config.preferences_path)
        self.credentials = CredentialStore(self.preferences)
        self.conversations = ConversationStore(self.preferences)
        self.credentials_use_case = ManageCredentialsUseCase(self.credentials)
        self.cohorts_use_case = ManageCohortsUseCase(CohortStore(self.preferences))

        tz = ZoneInfo(config.display_timezone) if config.display_timezone else None
        self.exporter = SpreadsheetExporter(config.export_dir, tz=tz)

        self._lock = threading.Lock()
        self._generation = 0
        self.current_aggregates: List[StockAggregate] = []
        self.current_query: Optional[FetchQuery] = None
        self.error_message: Optional[str] = None

        self.use_repository(repository or self._build_repository())

    # ------------------------------------------------------------------
    # Credentials and data source
    # ------------------------------------------------------------------

    def massive_api_key(self) -> Optional[str]:
        """Saved key first, then the environment."""
        return self.credentials.get_api_key() or self.settings.massive_api_key

    def gemini_api_key(self) -> Optional[str]:
        return self.credentials.get_gemini_api_key() or self.settings.gemini_api_key

    def _build_repository(self) -> MarketDataRepository:
        api_key = self.massive_api_key()
        if self.settings.use_mock_data or not api_key:
            logger.info("Using synthetic market data (mock mode or no Massive API key)")
            return SyntheticMarketDataRepository()
        return MassiveRepository(
            api_key,
            base_url=self.settings.massive_base_url,
            timeout=self.settings.request_timeout_seconds,
            limit=self.settings.aggregates_limit,
        )

    def use_repository(self, repository: MarketDataRepository) -> None:
        """Switch the data source, e.g. after credentials change."""
        self.repository = repository
        self.use_case = GetStockAggregatesUseCase(repository, today=self._today)
        logger.debug(f"Market data source: {repository.source_name}")

    def reload_repository(self) -> None:
        self.repository.close()
        self.use_repository(self._build_repository())

    def close(self) -> None:
        self.repository.close()

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def fetch(
        self,
        ticker: str,
        day: Optional[date] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        granularity: Granularity = DEFAULT_GRANULARITY,
    ) -> FetchMetadata:
        """
        Fetch aggregates and make them the current result set.

        A single day (default: yesterday) is fetched unless both ``start`` and
        ``end`` are given. Validation and data source errors are recorded in
        ``error_message`` instead of being raised.

        Returns:
            FetchMetadata; ``applied`` is False when a newer fetch was issued meanwhile
        """
        generation = self._next_generation()
        request_id = str(uuid.uuid4())[:8]
        log = logger.bind(request_id=request_id, generation=generation)
        started = time.time()
        source = self.repository.source_name

        error_message = None
        query = None
        try:
            if start is not None or end is not None:
                if start is None or end is None:
                    raise InvalidDateError("Both start and end are required for a range query")
                aggregates = self.use_case.execute_range(ticker, start, end, granularity)
                query_day = local_date(start)
            else:
                query_day = day or (self._today() - timedelta(days=1))
                aggregates = self.use_case.execute(ticker, query_day, granularity)
            query = FetchQuery(ticker=ticker.strip().upper(), day=query_day, granularity=granularity)
        except (UseCaseError, MassiveRepositoryError) as e:
            log.warning(f"Fetch #{generation} for {ticker!r} failed: {e}")
            aggregates = []
            error_message = str(e)

        latency = (time.time() - started) * 1000

        with self._lock:
            applied = generation == self._generation
            if applied:
                self.current_aggregates = aggregates
                self.current_query = query
                self.error_message = error_message

        if applied:
            log.info(f"Fetch #{generation} for {ticker!r} applied {len(aggregates)} bars in {latency:.0f}ms")
        else:
            log.info(f"Discarding stale result of fetch #{generation} for {ticker!r}")

        return FetchMetadata(
            request_id=request_id,
            generation=generation,
            ticker=(ticker or "").strip().upper() or "?",
            source=source if error_message is None else "none",
            latency_ms=latency,
            success=error_message is None,
            applied=applied,
            result_count=len(aggregates),
            error_message=error_message,
        )

    def ticker_details(self, ticker: str, on_date: Optional[date] = None) -> TickerDetails:
        return self.repository.get_ticker_details(ticker, on_date)

    # ------------------------------------------------------------------
    # Spreadsheets
    # ------------------------------------------------------------------

    def export_current(self) -> SavedSpreadsheet:
        """
        Export the current result set.

        Raises:
            ExportError: If there is no result set or the write fails
        """
        if not self.current_aggregates or self.current_query is None:
            raise ExportError("No data to export. Fetch stock data first.")
        query = self.current_query
        return self.exporter.export(
            self.current_aggregates, query.ticker, query.day, query.granularity
        )

    def spreadsheets(self) -> List[SavedSpreadsheet]:
        return self.exporter.list_spreadsheets()

    def selected_spreadsheets(self) -> List[SavedSpreadsheet]:
        return self.exporter.selected_for_llm(self.spreadsheets())

    def _require_spreadsheet(self, spreadsheet_id: str) -> SavedSpreadsheet:
        spreadsheet = self.exporter.find(spreadsheet_id)
        if spreadsheet is None:
            raise ExportError(f"No spreadsheet with id {spreadsheet_id}")
        return spreadsheet

    def set_selected(self, spreadsheet_id: str, is_selected: bool) -> SavedSpreadsheet:
        spreadsheet = self._require_spreadsheet(spreadsheet_id)
        return self.exporter.update_llm_selection(spreadsheet, is_selected)

    def delete_spreadsheet(self, spreadsheet_id: str) -> None:
        self.exporter.delete(self._require_spreadsheet(spreadsheet_id))
        self.cohorts_use_case.forget_spreadsheet(spreadsheet_id)

    # ------------------------------------------------------------------
    # Cohorts
    # ------------------------------------------------------------------

    def add_to_cohort(self, cohort_ref: str, spreadsheet_ids: List[str]) -> Cohort:
        """
        Add exported spreadsheets to a cohort.

        Raises:
            ExportError: If a spreadsheet id is unknown
            CohortError: If the cohort does not exist
        """
        for spreadsheet_id in spreadsheet_ids:
            self._require_spreadsheet(spreadsheet_id)
        return self.cohorts_use_case.add_spreadsheets(cohort_ref, spreadsheet_ids)

    def cohort_spreadsheets(self, cohort_ref: str) -> List[SavedSpreadsheet]:
        """Exported spreadsheets belonging to a cohort, newest first."""
        cohort = self.cohorts_use_case.require(cohort_ref)
        return [s for s in self.spreadsheets() if s.id in cohort.spreadsheet_ids]

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def chat(self, conversation_id: str = "default", cohort: Optional[str] = None) -> ChatSession:
        """
        Open a persisted conversation.

        The context is the spreadsheets selected for chat, or the members of
        ``cohort`` when one is given.

        Raises:
            CohortError: If ``cohort`` does not exist
        """
        if cohort is not None:
            cohort_id = self.cohorts_use_case.require(cohort).id

            def context_provider() -> List[SavedSpreadsheet]:
                return self.cohort_spreadsheets(cohort_id)
        else:
            context_provider = self.selected_spreadsheets

        # An empty key keeps GeminiClient from falling back to the process-wide settings
        client = GeminiClient(
            api_key=self.gemini_api_key() or "",
            model=self.settings.gemini_model,
            base_url=self.settings.gemini_base_url,
        )
        return ChatSession(
            conversation_id,
            client,
            self.conversations,
            context_provider=context_provider,
            reader=self.exporter.read_text,
        )
