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

    # Signs the per-job access token returned on submission.
    job_token_secret: SecretStr = Field(
        default=SecretStr("dev-insecure-job-token-secret"), alias="JOB_TOKEN_SECRET"
    )

    # Only read when STORE_BACKEND=redis.
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
