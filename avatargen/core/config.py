"""
Application Configuration
Loads settings from environment variables.
"""

from typing import List
from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    APP_NAME: str = "Avatar Generation API"
    DEBUG: bool = False
    API_BASE_URL: str = "http://localhost:8000"  # Base URL for file serving
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:19006"]

    # Document store: "memory" for local dev/tests, "sql" for a persistent table
    DOCUMENT_STORE: str = "memory"
    DATABASE_URL: str = "sqlite:///./avatargen.db"
    JOBS_COLLECTION: str = "avatarGenerations"

    # Change notification: "local" (single process) or "redis" (pub/sub)
    CHANGE_BUS: str = "local"
    REDIS_URL: str = "redis://localhost:6379"

    # Local storage fallback
    LOCAL_STORAGE_PATH: str = "./uploads"
    USE_LOCAL_STORAGE: bool = True

    # Google Cloud Storage
    USE_GCS: bool = False
    GCS_BUCKET_UPLOADS: str = "avatargen-uploads"
    GCP_PROJECT_ID: str = ""

    # Storage - S3 settings (used when neither GCS nor local storage is enabled)
    S3_BUCKET: str = ""
    S3_ENDPOINT: str = ""
    S3_ACCESS_KEY: str = ""
    S3_SECRET_KEY: str = ""
    S3_REGION: str = "us-east-1"

    # Upload paths: <namespace>/<owner>/<timestamp>_<random>.<ext>
    UPLOAD_NAMESPACE: str = "uploads"
    DEFAULT_OWNER_ID: str = "public-user"
    UPLOAD_TIMEOUT: float = 60.0

    # Prediction service (Replicate)
    REPLICATE_API_TOKEN: str = ""
    REPLICATE_API_URL: str = "https://api.replicate.com/v1"
    REPLICATE_MODEL_VERSION: str = "798c9c78ca767f5a9bbc9b020b9c8b1c5c064fa20096688620c4eb3e6b8f2c48"
    AVATAR_PROMPT: str = "Generate an anime style avatar, highly detailed portrait"
    SUBMIT_TIMEOUT: float = 30.0
    POLL_REQUEST_TIMEOUT: float = 15.0
    MAX_INLINE_PAYLOAD_SIZE: int = 10_000_000  # ~10MB of encoded data URI
    SUBMISSION_MODE: str = "auto"  # auto | inline | locator

    # Polling
    POLL_INTERVAL: float = 2.0  # Seconds between status checks
    POLL_MAX_ATTEMPTS: int = 300  # 10 minutes at the default interval
    POLL_ERROR_RETRIES: int = 3

    # Feed
    REDRIVE_ENABLED: bool = True
    FEED_RESTART_DELAY: float = 5.0  # Seconds before resubscribing after a lost change feed

    @field_validator('REPLICATE_API_TOKEN', 'S3_ACCESS_KEY', 'S3_SECRET_KEY', mode='before')
    @classmethod
    def strip_api_keys(cls, v):
        """Strip whitespace and newlines from API keys loaded from secrets."""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator('SUBMISSION_MODE', 'DOCUMENT_STORE', 'CHANGE_BUS', mode='before')
    @classmethod
    def normalize_choice(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
