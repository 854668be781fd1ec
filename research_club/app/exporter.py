"""
Spreadsheet exporter.
Writes fetched aggregates as CSV spreadsheets and indexes previously exported files.
"""

import uuid
from datetime import date, datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, List, Optional

import pandas as pd
from loguru import logger

from research_club.core.models import (
    DEFAULT_GRANULARITY,
    Granularity,
    SavedSpreadsheet,
    StockAggregate,
)
from research_club.core.storage import atomic_write_text, read_json, write_json

# Exported files hold CSV text; the suffix is kept so spreadsheet apps open them
EXPORT_SUFFIX = ".xlsx"
CSV_COLUMNS = [
    "Ticker",
    "Timestamp",
    "Open",
    "High",
    "Low",
    "Close",
    "Volume",
    "Granularity (minutes)",
]
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SELECTIONS_FILE = "llm_selections.json"
MANIFEST_FILE = "manifest.json"
PATH_SEPARATORS = ("/", "\\")


class ExportError(Exception):
    """Custom exception for spreadsheet export and file management errors."""
    pass


class SpreadsheetExporter:
    """
    Exports aggregates to CSV files and keeps two side files in the export directory:

    - ``manifest.json`` maps file name to id, ticker, date, granularity and creation time
    - ``llm_selections.json`` maps spreadsheet id to its "selected for chat" flag
    """

    def __init__(self, export_dir: Path, tz: Optional[tzinfo] = None):
        self.export_dir = Path(export_dir)
        self.export_dir.mkdir(parents=True, exist_ok=True)
        self.tz = tz
        self.selections_path = self.export_dir / SELECTIONS_FILE
        self.manifest_path = self.export_dir / MANIFEST_FILE

        selections = read_json(self.selections_path, default={})
        self._selections: dict[str, bool] = {
            str(key): value
            for key, value in (selections.items() if isinstance(selections, dict) else [])
            if isinstance(value, bool)
        }
        manifest = read_json(self.manifest_path, default={})
        self._manifest: dict[str, dict[str, Any]] = manifest if isinstance(manifest, dict) else {}

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    @staticmethod
    def build_file_name(ticker: str, day: date, granularity: Granularity) -> str:
        return f"{ticker.strip().upper()}_{day:%Y-%m-%d}_{granularity.label}{EXPORT_SUFFIX}"

    def _format_timestamp(self, timestamp: datetime) -> str:
        return timestamp.astimezone(self.tz).strftime(TIMESTAMP_FORMAT)

    def to_dataframe(self, aggregates: List[StockAggregate]) -> pd.DataFrame:
        """Tabulate aggregates in export column order, earliest bar first."""
        ordered = sorted(aggregates, key=lambda a: a.timestamp)
        return pd.DataFrame(
            {
                "Ticker": [a.ticker for a in ordered],
                "Timestamp": [self._format_timestamp(a.timestamp) for a in ordered],
                "Open": [a.open for a in ordered],
                "High": [a.high for a in ordered],
                "Low": [a.low for a in ordered],
                "Close": [a.close for a in ordered],
                "Volume": [a.volume for a in ordered],
                "Granularity (minutes)": [a.granularity_minutes for a in ordered],
            },
            columns=CSV_COLUMNS,
        )

    def export(
        self,
        aggregates: List[StockAggregate],
        ticker: str,
        day: date,
        granularity: Granularity,
    ) -> SavedSpreadsheet:
        """
        Export aggregates to a CSV spreadsheet.

        Args:
            aggregates: Bars to export (must not be empty)
            ticker: Ticker symbol used in the filename
            day: Reference date used in the filename
            granularity: Bar width used in the filename

        Returns:
            SavedSpreadsheet describing the written file

        Raises:
            ExportError: If there is nothing to export or the write fails
        """
        if not aggregates:
            raise ExportError("Nothing to export: the result set is empty")
        if any(separator in ticker for separator in PATH_SEPARATORS):
            raise ExportError(f"Cannot export ticker {ticker!r}: it contains a path separator")

        file_name = self.build_file_name(ticker, day, granularity)
        file_path = self.export_dir / file_name
        df = self.to_dataframe(aggregates)

        try:
            atomic_write_text(file_path, df.to_csv(index=False, lineterminator="\n"))
        except OSError as e:
            logger.error(f"Failed to write {file_path}: {e}")
            raise ExportError(f"Failed to export {file_name}: {e}") from e

        existing = self._manifest.get(file_name)
        spreadsheet_id = existing["id"] if existing and existing.get("id") else str(uuid.uuid4())
        created_at = datetime.now(timezone.utc)
        self._manifest[file_name] = {
            "id": spreadsheet_id,
            "ticker": ticker.strip().upper(),
            "date": day.isoformat(),
            "granularity": granularity.minutes,
            "created_at": created_at.isoformat(),
        }
        self._save_manifest()

        logger.info(f"Exported {len(df)} data points to: {file_path}")

        return SavedSpreadsheet(
            id=spreadsheet_id,
            file_path=file_path,
            ticker=ticker.strip().upper(),
            date=day,
            granularity=granularity,
            data_point_count=len(df),
            created_at=created_at,
            is_selected_for_llm=self._selections.get(spreadsheet_id, False),
        )

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    def list_spreadsheets(self) -> List[SavedSpreadsheet]:
        """
        List every exported spreadsheet, newest first.

        Files the manifest does not know about are adopted when their name
        follows the ``TICKER_yyyy-MM-dd_label`` pattern and skipped otherwise.
        """
        spreadsheets = []
        adopted = False

        for file_path in self.export_dir.glob(f"*{EXPORT_SUFFIX}"):
            if file_path.name.startswith(".") or not file_path.is_file():
                continue

            entry = self._manifest.get(file_path.name)
            if entry is None:
                entry = self._entry_from_file_name(file_path)
                if entry is None:
                    logger.debug(f"Skipping unrecognised file {file_path.name}")
                    continue
                self._manifest[file_path.name] = entry
                adopted = True

            try:
                spreadsheet = SavedSpreadsheet(
                    id=entry["id"],
                    file_path=file_path,
                    ticker=entry["ticker"],
                    date=date.fromisoformat(entry["date"]),
                    granularity=Granularity.from_minutes(entry["granularity"]),
                    data_point_count=self._count_data_points(file_path),
                    created_at=datetime.fromisoformat(entry["created_at"]),
                    is_selected_for_llm=self._selections.get(entry["id"], False),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping {file_path.name} with bad manifest entry: {e}")
                continue
            spreadsheets.append(spreadsheet)

        if adopted:
            self._save_manifest()

        return sorted(spreadsheets, key=lambda s: s.created_at, reverse=True)

    def find(self, spreadsheet_id: str) -> Optional[SavedSpreadsheet]:
        for spreadsheet in self.list_spreadsheets():
            if spreadsheet.id == spreadsheet_id:
                return spreadsheet
        return None

    def _entry_from_file_name(self, file_path: Path) -> Optional[dict[str, Any]]:
        # rsplit keeps underscores inside the ticker intact
        parts = file_path.stem.rsplit("_", 2)
        if len(parts) < 3 or not parts[0]:
            return None
        ticker, date_str, label = parts
        try:
            day = datetime.strptime(date_str, "%Y-%m-%d").date()
        except ValueError:
            return None
        granularity = Granularity.from_label(label) or DEFAULT_GRANULARITY

        stat = file_path.stat()
        created_ts = getattr(stat, "st_birthtime", None) or stat.st_mtime
        return {
            "id": str(uuid.uuid4()),
            "ticker": ticker.upper(),
            "date": day.isoformat(),
            "granularity": granularity.minutes,
            "created_at": datetime.fromtimestamp(created_ts, tz=timezone.utc).isoformat(),
        }

    @staticmethod
    def _count_data_points(file_path: Path) -> int:
        try:
            content = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read {file_path}: {e}")
            return 0
        lines = [line for line in content.splitlines() if line.strip()]
        # Subtract the header line
        return max(0, len(lines) - 1)

    # ------------------------------------------------------------------
    # Selection and deletion
    # ------------------------------------------------------------------

    def update_llm_selection(
        self, spreadsheet: SavedSpreadsheet, is_selected: bool
    ) -> SavedSpreadsheet:
        """Persist the "selected for chat" flag immediately and return the updated record."""
        self._selections[spreadsheet.id] = bool(is_selected)
        self._save_selections()
        return spreadsheet.model_copy(update={"is_selected_for_llm": bool(is_selected)})

    @staticmethod
    def selected_for_llm(spreadsheets: List[SavedSpreadsheet]) -> List[SavedSpreadsheet]:
        return [s for s in spreadsheets if s.is_selected_for_llm]

    def delete(self, spreadsheet: SavedSpreadsheet) -> None:
        """
        Delete a spreadsheet file together with its selection and manifest entries.

        Raises:
            ExportError: If the file exists but cannot be removed
        """
        try:
            spreadsheet.file_path.unlink()
        except FileNotFoundError:
            logger.warning(f"{spreadsheet.file_path} was already removed")
        except OSError as e:
            logger.error(f"Failed to delete {spreadsheet.file_path}: {e}")
            raise ExportError(f"Failed to delete {spreadsheet.file_name}: {e}") from e

        self._selections.pop(spreadsheet.id, None)
        self._manifest.pop(spreadsheet.file_name, None)
        self._save_selections()
        self._save_manifest()
        logger.info(f"Deleted spreadsheet {spreadsheet.file_name}")

    def read_text(self, spreadsheet: SavedSpreadsheet) -> str:
        return spreadsheet.file_path.read_text(encoding="utf-8")

    def _save_selections(self) -> None:
        try:
            write_json(self.selections_path, self._selections)
        except OSError as e:
            logger.error(f"Failed to save chat selections: {e}")
            raise ExportError(f"Failed to save chat selections: {e}") from e

    def _save_manifest(self) -> None:
        try:
            write_json(self.manifest_path, self._manifest)
        except OSError as e:
            logger.error(f"Failed to save export manifest: {e}")
            raise ExportError(f"Failed to save export manifest: {e}") from e
