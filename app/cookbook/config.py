"""
Application configuration using Pydantic Settings.

Automatically loads environment variables from .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI
    openai_api_key: str | None = None
    classification_model: str = "gpt-4.1"
    image_model: str = "dall-e-3"

    # Database
    database_url: str = "sqlite:///./cookbook_extraction.db"
    init_db_on_startup: bool = True

    # Debug flags
    sql_debug: bool = False
    debug: bool = False

    # Page rendering
    render_dpi: int = 150
    max_image_side: int = 2048
    max_pdf_size_mb: int = 500
    max_pdf_pages: int = 1000

    # Page classification
    ai_timeout_seconds: float = 90.0
    ai_max_attempts: int = 3
    ai_backoff_base_seconds: float = 2.0
    ai_backoff_max_seconds: float = 30.0
    review_confidence_threshold: float = 0.7
    context_window_pages: int = 2
    max_consecutive_ai_failures: int = 5

    # Deduplication
    dedup_ingredient_threshold: float = 0.6

    # Cost / stats
    cost_per_page_usd: float = 0.01
    cost_update_interval_pages: int = 5

    # Image generation
    generate_images: bool = True
    image_concurrency: int = 3
    image_timeout_seconds: float = 120.0

    # Notification (Resend)
    resend_api_key: str | None = None
    email_from: str = "Cookbook Extraction <noreply@example.com>"
    app_url: str = "http://localhost:5173"

    # Storage
    uploads_dir: Path = Path("./uploads")

    # Nutrition sanity rules (Atwater factors), evaluated on extracted estimates
    nutrition_rules: list[str] = ["calories == 4 * proteins + 4 * carbs + 9 * fats"]
    nutrition_tolerance: float = 0.15

    # Restart jobs left pending/processing by a previous process
    resume_interrupted_jobs: bool = True

    model_config = SettingsConfigDict(
        # Load from .env file in the backend directory
        env_file=Path(__file__).parent / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
        # Case insensitive environment variable names
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application configuration loaded from environment.
    """
    return Settings()
