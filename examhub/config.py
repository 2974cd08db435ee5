"""Application configuration settings."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    database_url: str = ""
    environment: str = "dev"
    # Lifecycle settings
    schedule_conflict_check: bool = True  # Refuse approvals that overlap another exam of the same class
    exam_store_backend: str = "sql"  # sql, memory
    # HTTP settings
    cors_origins: list[str] = ["http://localhost:3000"]


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # "text" or "json"
    ENV: str = "dev"  # dev | staging | prod

    class Config:
        env_prefix = "APP_"


logging_settings = LoggingSettings()
settings = Settings()  # type: ignore
