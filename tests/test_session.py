"""
Tests for ResearchSession.
"""

from datetime import date, datetime, timezone
from unittest.mock import patch

import pytest

from research_club.app.exporter import ExportError
from research_club.app.session import ResearchSession
from research_club.app.use_cases import CohortError
from research_club.core.models import Granularity
from research_club.data_sources.massive import MassiveAuthError, MassiveRepository
from research_club.data_sources.synthetic import SyntheticMarketDataRepository
from research_club.llm import gemini_client
from research_club.llm.chat import CONTEXT_HEADER
from research_club.llm.gemini_client import GeminiAuthError


@pytest.fixture
def session(test_settings, fixed_today):
    research = ResearchSession(test_settings, today=fixed_today)
    yield research
    research.close()


class FailingRepository(SyntheticMarketDataRepository):
    def get_aggregates(self, ticker, start, end, granularity):
        raise MassiveAuthError(401, "Unauthorized (HTTP 401). Check your Massive API key")


class ReentrantRepository(SyntheticMarketDataRepository):
    """Issues a second fetch while the first one is still in flight."""

    def __init__(self):
        super().__init__()
        self.session = None
        self.inner_metadata = None

    def get_aggregates(self, ticker, start, end, granularity):
        if ticker == "SLOW":
            self.inner_metadata = self.session.fetch("FAST", day=date(2024, 1, 3), granularity=granularity)
        return super().get_aggregates(ticker, start, end, granularity)


class TestRepositorySelection:
    """Tests for choosing the market data source."""

    def test_mock_mode_uses_synthetic(self, session):
        assert session.repository.source_name == "synthetic"

    def test_no_key_uses_synthetic(self, test_settings):
        settings = test_settings.model_copy(update={"use_mock_data": False})
        research = ResearchSession(settings)
        assert isinstance(research.repository, SyntheticMarketDataRepository)

    def test_saved_key_selects_massive(self, test_settings):
        settings = test_settings.model_copy(update={"use_mock_data": False})
        research = ResearchSession(settings)
        research.credentials_use_case.save_credentials("massive-key-0001")
        research.reload_repository()
        try:
            assert isinstance(research.repository, MassiveRepository)
            assert research.repository.api_key == "massive-key-0001"
        finally:
            research.close()

    def test_saved_key_preferred_over_environment(self, test_settings):
        settings = test_settings.model_copy(update={"gemini_api_key": "from-environment"})
        research = ResearchSession(settings)
        assert research.gemini_api_key() == "from-environment"
        research.credentials_use_case.save_gemini_credentials("saved-gemini-key")
        assert research.gemini_api_key() == "saved-gemini-key"


class TestFetch:
    """Tests for ResearchSession.fetch."""

    def test_fetch_day(self, session):
        metadata = session.fetch("aapl", day=date(2024, 1, 2), granularity=Granularity.FIVE_MINUTES)

        assert metadata.success and metadata.applied
        assert metadata.source == "synthetic"
        assert metadata.result_count == 78
        assert metadata.generation == 1
        assert len(session.current_aggregates) == 78
        assert session.current_query.ticker == "AAPL"
        assert session.error_message is None

    def test_default_day_is_yesterday(self, session):
        session.fetch("AAPL")
        assert session.current_query.day == date(2024, 1, 9)

    def test_range_fetch(self, session):
        start = datetime(2024, 1, 2, 0, 0).astimezone()
        end = datetime(2024, 1, 3, 23, 59).astimezone()
        metadata = session.fetch("AAPL", start=start, end=end, granularity=Granularity.ONE_HOUR)
        assert metadata.result_count == 12
        assert session.current_query.day == date(2024, 1, 2)

    def test_half_open_range_rejected(self, session):
        metadata = session.fetch("AAPL", start=datetime(2024, 1, 2, tzinfo=timezone.utc))
        assert not metadata.success
        assert "Invalid date" in session.error_message

    def test_validation_error_recorded(self, session):
        session.fetch("AAPL", day=date(2024, 1, 2))
        metadata = session.fetch("   ", day=date(2024, 1, 2))

        assert not metadata.success
        assert metadata.source == "none"
        assert session.error_message == "Invalid ticker: Ticker cannot be empty"
        assert session.current_aggregates == []
        assert session.current_query is None

    def test_repository_error_recorded(self, session):
        session.use_repository(FailingRepository())
        metadata = session.fetch("AAPL", day=date(2024, 1, 2))
        assert not metadata.success
        assert "Unauthorized" in session.error_message

    def test_stale_result_discarded(self, session):
        """Test that a fetch finishing after a newer one does not replace its result."""
        repository = ReentrantRepository()
        repository.session = session
        session.use_repository(repository)

        outer = session.fetch("SLOW", day=date(2024, 1, 2), granularity=Granularity.ONE_HOUR)

        assert repository.inner_metadata.applied is True
        assert outer.success is True
        assert outer.applied is False
        assert outer.generation < repository.inner_metadata.generation
        assert session.current_query.ticker == "FAST"
        assert all(bar.ticker == "FAST" for bar in session.current_aggregates)


class TestSpreadsheets:
    """Tests for exporting and managing spreadsheets through the session."""

    def test_export_without_data(self, session):
        with pytest.raises(ExportError, match="No data to export"):
            session.export_current()

    def test_export_select_delete(self, session):
        session.fetch("AAPL", day=date(2024, 1, 2))
        saved = session.export_current()

        assert saved.file_name == "AAPL_2024-01-02_5minutes.xlsx"
        assert saved.file_path.parent == session.settings.export_dir
        assert [s.id for s in session.spreadsheets()] == [saved.id]

        session.set_selected(saved.id, True)
        assert [s.id for s in session.selected_spreadsheets()] == [saved.id]

        session.delete_spreadsheet(saved.id)
        assert session.spreadsheets() == []
        assert not saved.file_path.exists()

    def test_unknown_spreadsheet(self, session):
        with pytest.raises(ExportError):
            session.set_selected("missing", True)


class TestCohorts:
    """Tests for grouping exported spreadsheets into cohorts."""

    def test_add_unknown_spreadsheet(self, session):
        session.cohorts_use_case.create_cohort("Tech week")
        with pytest.raises(ExportError, match="No spreadsheet with id missing"):
            session.add_to_cohort("Tech week", ["missing"])
        assert session.cohorts_use_case.require("Tech week").spreadsheet_ids == set()

    def test_add_to_unknown_cohort(self, session):
        session.fetch("AAPL", day=date(2024, 1, 2))
        saved = session.export_current()
        with pytest.raises(CohortError):
            session.add_to_cohort("missing", [saved.id])

    def test_deleted_spreadsheet_leaves_cohort(self, session):
        session.fetch("AAPL", day=date(2024, 1, 2))
        saved = session.export_current()
        session.cohorts_use_case.create_cohort("Tech week")
        session.add_to_cohort("Tech week", [saved.id])
        assert [s.id for s in session.cohort_spreadsheets("Tech week")] == [saved.id]

        session.delete_spreadsheet(saved.id)
        assert session.cohorts_use_case.require("Tech week").spreadsheet_ids == set()
        assert session.cohort_spreadsheets("Tech week") == []


class TestChat:
    """Tests for opening a chat from the session."""

    def test_chat_about_cohort(self, session):
        session.fetch("AAPL", day=date(2024, 1, 2))
        selected = session.export_current()
        session.set_selected(selected.id, True)
        session.fetch("MSFT", day=date(2024, 1, 2))
        member = session.export_current()
        session.cohorts_use_case.create_cohort("Software")
        session.add_to_cohort("Software", [member.id])

        with patch("research_club.app.session.GeminiClient") as mock_client_class:
            mock_client_class.return_value.send_message.return_value = "Both calm."
            session.chat("software", cohort="software").send("Compare")

        context = mock_client_class.return_value.send_message.call_args[0][1]
        assert "=== MSFT_2024-01-02_5minutes ===" in context
        assert "AAPL_2024-01-02_5minutes" not in context

    def test_chat_about_unknown_cohort(self, session):
        with pytest.raises(CohortError):
            session.chat(cohort="missing")

    def test_chat_uses_selected_spreadsheets(self, session):
        session.fetch("AAPL", day=date(2024, 1, 2))
        saved = session.export_current()
        session.set_selected(saved.id, True)

        with patch("research_club.app.session.GeminiClient") as mock_client_class:
            mock_client_class.return_value.send_message.return_value = "Looks steady."
            chat = session.chat()
            reply = chat.send("Summarize AAPL")

        assert reply.content == "Looks steady."
        context = mock_client_class.return_value.send_message.call_args[0][1]
        assert "=== AAPL_2024-01-02_5minutes ===" in context
        assert "Data Points: 78" in context

    def test_chat_without_selection(self, session):
        with patch("research_club.app.session.GeminiClient") as mock_client_class:
            mock_client_class.return_value.send_message.return_value = "No data yet."
            session.chat().send("Anything?")

        assert mock_client_class.return_value.send_message.call_args[0][1] == CONTEXT_HEADER

    def test_chat_ignores_process_wide_key(self, session):
        """Test that only the session's own settings and saved key are used."""
        with patch.object(gemini_client.settings, "gemini_api_key", "process-wide-key"):
            chat = session.chat()
            assert chat.client.api_key == ""
            with pytest.raises(GeminiAuthError):
                chat.send("Anything?")

        session.credentials_use_case.save_gemini_credentials("saved-gemini-key")
        assert session.chat().client.api_key == "saved-gemini-key"

    def test_transcript_persists(self, session, test_settings, fixed_today):
        with patch("research_club.app.session.GeminiClient") as mock_client_class:
            mock_client_class.return_value.send_message.return_value = "Hi there."
            session.chat().send("Hello")

            restarted = ResearchSession(test_settings, today=fixed_today)
            assert [m.content for m in restarted.chat().messages] == ["Hello", "Hi there."]
