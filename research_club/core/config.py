"""
Configuration module for Research Club.
Loads environment variables and provides settings for the application.
"""

from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load .env file from project root
env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Massive (formerly Polygon.io) market data API
    massive_api_key: Optional[str] = Field(default=None, alias="MASSIVE_API_KEY")
    massive_base_url: str = Field(
        default="https://api.massive.com", alias="MASSIVE_BASE_URL"
    )
    request_timeout_seconds: float = Field(
        default=30.0, gt=0, alias="REQUEST_TIMEOUT_SECONDS"
    )
    aggregates_limit: int = Field(default=50000, gt=0, alias="AGGREGATES_LIMIT")

    # Gemini chat assistant
    gemini_api_key: Optional[str] = Field(default=None, alias="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-3-flash-preview", alias="GEMINI_MODEL")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com", alias="GEMINI_BASE_URL"
    )

    # Feature flags
    use_mock_data: bool = Field(default=False, alias="USE_MOCK_DATA")

    # Data storage paths
    data_dir: Path = Field(default=Path("data"), alias="RESEARCH_CLUB_DATA_DIR")
    export_dir_name: str = Field(default="ResearchClubApp", alias="EXPORT_DIR_NAME")

    # Time zone used when rendering bar timestamps (None = local zone)
    display_timezone: Optional[str] = Field(default=None, alias="DISPLAY_TIMEZONE")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Ensure data directory exists
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def export_dir(self) -> Path:
        """Directory holding exported spreadsheets and their metadata files."""
        return self.data_dir / self.export_dir_name

    @property
    def preferences_path(self) -> Path:
        """JSON file backing the local key-value store."""
        return self.data_dir / "preferences.json"


# Global settings instance
settings = Settings()
