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
    APP_NAME: str = "Tunesmith API"
    DEBUG: bool = False
    PUBLIC_BASE_URL: str = ""  # Absolute base URL, used for callbacks and transcode inputs

    # Database - SQLite for local dev, PostgreSQL for production
    DATABASE_URL: str = "sqlite:///./tunesmith.db"

    # Music generation provider (KIE.ai)
    KIE_API_KEY: str = ""
    KIE_API_BASE: str = "https://api.kie.ai/api/v1"
    KIE_MODEL: str = "V4"
    KIE_REQUEST_TIMEOUT: float = 30.0

    # Inbound webhook shared secret (optional, passed as ?token=)
    CALLBACK_TOKEN: str = ""

    # Reconciliation
    DUPLICATE_WINDOW_SECONDS: int = 10
    COMPLETION_LEASE_SECONDS: int = 120
    STALE_JOB_MAX_AGE_SECONDS: int = 1800
    STATUS_POLL_INTERVAL_SECONDS: int = 5  # Cadence clients are expected to poll at

    # Artifact ingestion
    MAX_ARTIFACT_BYTES: int = 100 * 1024 * 1024
    ARTIFACT_FETCH_TIMEOUT: float = 60.0

    # Video transcoding (MUX) - optional
    MUX_TOKEN_ID: str = ""
    MUX_TOKEN_SECRET: str = ""
    MUX_API_BASE: str = "https://api.mux.com"
    TRANSCODE_POLL_INTERVAL_SECONDS: int = 30
    TRANSCODE_MAX_ATTEMPTS: int = 5
    TRANSCODE_RETENTION_SECONDS: int = 24 * 60 * 60

    # Quota (0 disables the check)
    GENERATION_QUOTA_PER_WINDOW: int = 0
    GENERATION_QUOTA_WINDOW_DAYS: int = 7

    # Storage - S3 settings (optional)
    S3_BUCKET: str = ""
    S3_ENDPOINT: str = ""
    S3_ACCESS_KEY: str = ""
    S3_SECRET_KEY: str = ""
    S3_REGION: str = "us-east-1"

    # Local storage fallback
    LOCAL_STORAGE_PATH: str = "./uploads"
    USE_LOCAL_STORAGE: bool = True

    # Google Cloud Storage (for Cloud Run deployment)
    USE_GCS: bool = False
    GCS_BUCKET_UPLOADS: str = "tunesmith-uploads"
    GCS_BUCKET_OUTPUTS: str = "tunesmith-outputs"
    GCP_PROJECT_ID: str = ""

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    @field_validator('KIE_API_KEY', 'MUX_TOKEN_ID', 'MUX_TOKEN_SECRET', 'CALLBACK_TOKEN', mode='before')
    @classmethod
    def strip_api_keys(cls, v):
        """Strip whitespace and newlines from API keys loaded from secrets."""
        if isinstance(v, str):
            return v.strip()
        return v

    @property
    def callback_url(self) -> str:
        """Webhook URL handed to the music provider, empty when not publicly reachable."""
        if not self.PUBLIC_BASE_URL:
            return ""
        url = f"{self.PUBLIC_BASE_URL.rstrip('/')}/api/v1/callbacks/generation"
        if self.CALLBACK_TOKEN:
            url = f"{url}?token={self.CALLBACK_TOKEN}"
        return url

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
