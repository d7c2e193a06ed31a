"""
Configuration and settings for the school backend.
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

    api_prefix: str = Field(default="")

    # Document store: MongoDB takes precedence over a SQLAlchemy URL
    mongo_uri: Optional[str] = Field(default=None, env="MONGO_URI")
    mongo_database: str = Field(default="admin1", env="MONGO_DATABASE")
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")
    persistence_timeout_seconds: float = Field(
        default=5.0, env="PERSISTENCE_TIMEOUT_SECONDS"
    )

    # S3-compatible storage (Tencent COS) for uploaded files
    cos_endpoint: Optional[str] = Field(default=None, env="COS_ENDPOINT")
    cos_region: Optional[str] = Field(default=None, env="COS_REGION")
    cos_bucket: Optional[str] = Field(default=None, env="COS_BUCKET")
    aws_access_key_id: Optional[str] = Field(
        default=None, env="AWS_ACCESS_KEY_ID"
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None, env="AWS_SECRET_ACCESS_KEY"
    )
    cos_public_base_url: Optional[str] = Field(
        default=None, env="COS_PUBLIC_BASE_URL"
    )
    public_base_url: str = Field(
        default="http://localhost:8080", env="PUBLIC_BASE_URL"
    )

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias="SCHOOL_USE_IN_MEMORY_BACKENDS",
    )

    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["*"], env="CORS_ALLOW_ORIGINS"
    )

    # Server
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=8080, env="PORT")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
