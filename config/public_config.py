from __future__ import annotations

import os
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """
    Default application root.

    Docker images mount the service at /app; local runs use the current directory.
    """
    env = os.environ.get("APP_ROOT")
    if env:
        return Path(env).resolve()
    if Path("/app").exists():
        return Path("/app").resolve()
    return Path.cwd().resolve()


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- core paths ---
    app_root: Path = Field(default_factory=_default_app_root, alias="APP_ROOT")
    output_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "Output").resolve(),
        validation_alias=AliasChoices("VIDEOTEXT_OUTPUT_DIR", "OUTPUT_DIR"),
    )
    log_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="VIDEOTEXT_LOG_DIR"
    )
    # Runtime-only state directory (job DB, KV DB, lock files).
    # If unset, defaults to "<VIDEOTEXT_OUTPUT_DIR>/_state".
    state_dir: Path | None = Field(default=None, alias="VIDEOTEXT_STATE_DIR")
    uploads_dir: Path | None = Field(default=None, alias="VIDEOTEXT_UPLOADS_DIR")
    jobs_db_name: str = Field(default="jobs.db", alias="VIDEOTEXT_JOBS_DB_NAME")
    kv_db_name: str = Field(default="kv.db", alias="VIDEOTEXT_KV_DB_NAME")

    # --- tool binaries ---
    ffmpeg_bin: str = Field(default="ffmpeg", alias="FFMPEG_BIN")
    ffprobe_bin: str = Field(default="ffprobe", alias="FFPROBE_BIN")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    # --- shared ephemeral store ---
    store_backend: str = Field(default="sqlite", alias="STORE_BACKEND")  # memory|sqlite|redis

    # --- uploads ---
    upload_max_chunks: int = Field(default=10_000, alias="UPLOAD_MAX_CHUNKS")
    upload_session_ttl_s: int = Field(default=24 * 3600, alias="UPLOAD_SESSION_TTL_S")
    upload_rate_limit: int = Field(default=3, alias="UPLOAD_RATE_LIMIT")
    upload_rate_window_s: int = Field(default=60, alias="UPLOAD_RATE_WINDOW_S")

    # --- admission / queue ---
    queue_soft_limit: int = Field(default=200, alias="QUEUE_SOFT_LIMIT")
    queue_hard_limit: int = Field(default=300, alias="QUEUE_HARD_LIMIT")
    priority_reservation_threshold: int = Field(
        default=50, alias="PRIORITY_RESERVATION_THRESHOLD"
    )

    # --- workers ---
    workers_standard: int = Field(default=2, alias="WORKERS_STANDARD")
    workers_priority: int = Field(default=1, alias="WORKERS_PRIORITY")
    job_attempts: int = Field(default=2, alias="JOB_ATTEMPTS")
    # an active job whose heartbeat is older than this is taken back from its worker
    active_lease_s: float = Field(default=60.0, alias="ACTIVE_LEASE_S")
    # how often a running pool looks in the store for work queued by other processes
    queue_poll_interval_s: float = Field(default=2.0, alias="QUEUE_POLL_INTERVAL_S")

    # --- watchdog / dynamic deadline ---
    watchdog_timeout_s: float = Field(default=90.0, alias="WATCHDOG_TIMEOUT_S")
    deadline_check_interval_s: float = Field(default=15.0, alias="DEADLINE_CHECK_INTERVAL_S")
    deadline_backlog_threshold: int = Field(default=20, alias="DEADLINE_BACKLOG_THRESHOLD")

    # --- partial results ---
    partial_ttl_s: int = Field(default=3600, alias="PARTIAL_TTL_S")
    partial_max_segments: int = Field(default=2000, alias="PARTIAL_MAX_SEGMENTS")
    partial_max_response_bytes: int = Field(default=150 * 1024, alias="PARTIAL_MAX_RESPONSE_BYTES")

    # --- dedup cache (0 disables) ---
    cache_ttl_days: int = Field(default=30, alias="CACHE_TTL_DAYS")

    # --- batch / notifications ---
    batch_expiry_s: int = Field(default=24 * 3600, alias="BATCH_EXPIRY_S")
    webhook_timeout_s: float = Field(default=10.0, alias="WEBHOOK_TIMEOUT_S")

    # --- transcription chunking ---
    transcribe_chunk_seconds: float = Field(default=600.0, alias="TRANSCRIBE_CHUNK_SECONDS")
    transcribe_concurrency: int = Field(default=2, alias="TRANSCRIBE_CONCURRENCY")

    @property
    def resolved_state_dir(self) -> Path:
        return Path(self.state_dir) if self.state_dir else Path(self.output_dir) / "_state"

    @property
    def resolved_uploads_dir(self) -> Path:
        return Path(self.uploads_dir) if self.uploads_dir else Path(self.app_root) / "uploads"

    @property
    def artifacts_dir(self) -> Path:
        return Path(self.output_dir) / "artifacts"
