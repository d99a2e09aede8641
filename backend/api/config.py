"""
Application Configuration
Loads settings from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional
from pathlib import Path

BACKEND_DIR = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # CORS Configuration
    cors_origins: List[str] = ["*"]

    # Storage
    downloads_dir: Path = BACKEND_DIR.parent / "downloads"
    history_file: Path = BACKEND_DIR / "data" / "history.json"

    # Job Scheduling
    max_concurrent: int = 2

    # Scraper Configuration
    scraper_min_width: int = 400
    scraper_min_height: int = 400
    scraper_min_file_size: int = 5000  # bytes; smaller files are deleted
    scraper_concurrency: int = 3
    scraper_max_pages: int = 50
    scraper_nav_timeout: float = 25.0
    scraper_challenge_timeout: int = 30
    scraper_mirror_challenge_timeout: int = 10
    scraper_page_timeout: float = 60.0
    scraper_download_timeout: float = 15.0
    scraper_headless: bool = True
    chrome_path: Optional[str] = None
    scraper_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    # Logging Configuration
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Paths
    @property
    def log_dir(self) -> Path:
        """Get the log directory path."""
        return BACKEND_DIR.parent / "logs"

    @property
    def log_file(self) -> Path:
        """Get the log file path."""
        return self.log_dir / "backend.log"

    @property
    def data_dir(self) -> Path:
        """Get the data directory path."""
        return self.history_file.parent

    class Config:
        # Only load .env if it exists to avoid permission errors
        env_file = ".env" if Path(".env").exists() else None
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


# Global settings instance
settings = Settings()
