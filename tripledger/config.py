"""
Configuration and settings for the trip ledger backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    # Database (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # Cookie sessions
    session_secret: Optional[str] = Field(default=None)
    session_cookie: str = Field(default="tripledger_session")
    session_max_age_seconds: int = Field(default=7 * 24 * 3600)
    session_https_only: bool = Field(default=False)

    # S3-compatible storage (AWS, Supabase Storage, COS, MinIO)
    s3_endpoint: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    s3_bucket: str = Field(default="expense-receipts")
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Receipts
    receipt_url_ttl_seconds: int = Field(default=3600, ge=60, le=7 * 24 * 3600)
    max_receipt_bytes: int = Field(default=10 * 1024 * 1024, gt=0)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="TRIPLEDGER_USE_IN_MEMORY_BACKENDS"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
