from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecretConfig(BaseSettings):
    """
    Sensitive config.

    This module is safe to commit: it contains *no* secrets, only loading logic.
    Real secret values should come from:
      - environment variables (preferred in production)
      - optional local `.env.secrets` file (developer convenience)
    """

    model_config = SettingsConfigDict(
        env_file=".env.secrets",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # queue / heartbeat backend (may embed credentials)
    redis_url: str | None = Field(default=None, alias="REDIS_URL")

    # object storage credentials (MinIO defaults keep local dev working)
    s3_access_key: SecretStr = Field(default=SecretStr("minioadmin"), alias="S3_ACCESS_KEY")
    s3_secret_key: SecretStr = Field(default=SecretStr("minioadmin"), alias="S3_SECRET_KEY")
