from __future__ import annotations

import os
import tempfile
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """
    Default application root.

    Historically, this project assumes:
      - Docker: /app
      - Local/dev: current working directory
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
    log_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="SCREENCAST_LOG_DIR"
    )
    # Runtime-only state directory (video DB, local queue, local heartbeat).
    # If unset, defaults to "<APP_ROOT>/_state".
    state_dir: Path | None = Field(default=None, alias="SCREENCAST_STATE_DIR")
    # Per-job scratch directories live under here; one private subdir per claimed job.
    scratch_dir: Path | None = Field(default=None, alias="SCREENCAST_SCRATCH_DIR")
    videos_db_name: str = Field(default="videos.db", alias="SCREENCAST_VIDEOS_DB_NAME")
    queue_db_name: str = Field(default="queue.db", alias="SCREENCAST_QUEUE_DB_NAME")

    # --- tool binaries ---
    ffmpeg_bin: str = Field(default="ffmpeg", alias="FFMPEG_BIN")
    ffprobe_bin: str = Field(default="ffprobe", alias="FFPROBE_BIN")
    whisper_bin: str = Field(
        default="whisper-cli", alias=AliasChoices("WHISPER_BIN", "WHISPER_CPP_BIN")
    )
    whisper_models_dir: Path = Field(default=Path("models"), alias="WHISPER_MODELS_DIR")

    # --- web server (status/health surface) ---
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    # --- queue ---
    # auto: use Redis if REDIS_URL is set, else the local sqlite-backed queue
    # redis: require Redis
    # local: force the local queue (single host only)
    queue_backend: str = Field(
        default="auto", alias=AliasChoices("QUEUE_BACKEND", "QUEUE_MODE")
    )  # auto|redis|local
    queue_name: str = Field(default="video-processing", alias="QUEUE_NAME")
    # Redis key prefix for queue/locks/heartbeat (no secrets)
    redis_queue_prefix: str = Field(default="screencast", alias="REDIS_QUEUE_PREFIX")
    queue_max_attempts: int = Field(default=3, alias="QUEUE_MAX_ATTEMPTS")
    queue_backoff_ms: int = Field(default=5_000, alias="QUEUE_BACKOFF_MS")
    queue_backoff_cap_ms: int = Field(default=10 * 60_000, alias="QUEUE_BACKOFF_CAP_MS")
    # Bounded recent history for observability
    queue_keep_completed: int = Field(default=100, alias="QUEUE_KEEP_COMPLETED")
    queue_keep_failed: int = Field(default=50, alias="QUEUE_KEEP_FAILED")
    # Per-job lease (ms). Refreshed while a job runs; an expired lease means the job stalled.
    queue_lock_ttl_ms: int = Field(default=120_000, alias="QUEUE_LOCK_TTL_MS")
    queue_lock_refresh_ms: int = Field(default=20_000, alias="QUEUE_LOCK_REFRESH_MS")
    queue_poll_interval_s: float = Field(default=0.5, alias="QUEUE_POLL_INTERVAL_S")

    # --- worker ---
    worker_concurrency: int = Field(default=2, alias="WORKER_CONCURRENCY")
    worker_metrics_port: int = Field(default=0, alias="WORKER_METRICS_PORT")  # 0 disables
    drain_timeout_sec: int = Field(default=120, alias="DRAIN_TIMEOUT_SEC")
    transcription_enabled: bool = Field(default=True, alias="TRANSCRIPTION_ENABLED")

    # --- heartbeat / health ---
    heartbeat_key: str = Field(default="worker:heartbeat", alias="HEARTBEAT_KEY")
    heartbeat_interval_s: float = Field(default=5.0, alias="HEARTBEAT_INTERVAL_S")
    heartbeat_ttl_s: int = Field(default=15, alias="HEARTBEAT_TTL_S")
    heartbeat_stale_s: float = Field(default=30.0, alias="HEARTBEAT_STALE_S")

    # --- compose ---
    compose_timeout_s: int = Field(default=600, alias="COMPOSE_TIMEOUT_S")
    probe_timeout_s: int = Field(default=60, alias="PROBE_TIMEOUT_S")
    camera_width: int = Field(default=240, alias="CAMERA_WIDTH")
    camera_margin: int = Field(default=20, alias="CAMERA_MARGIN")
    camera_opacity: float = Field(default=0.9, alias="CAMERA_OPACITY")
    video_crf: int = Field(default=23, alias="VIDEO_CRF")
    video_preset: str = Field(default="fast", alias="VIDEO_PRESET")
    audio_codec: str = Field(default="aac", alias="AUDIO_CODEC")

    # --- thumbnail ---
    thumbnail_offset_s: float = Field(default=1.0, alias="THUMBNAIL_OFFSET_S")
    thumbnail_width: int = Field(default=640, alias="THUMBNAIL_WIDTH")
    thumbnail_height: int = Field(default=360, alias="THUMBNAIL_HEIGHT")
    thumbnail_quality: int = Field(default=2, alias="THUMBNAIL_QUALITY")
    thumbnail_timeout_s: int = Field(default=30, alias="THUMBNAIL_TIMEOUT_S")

    # --- transcription ---
    whisper_engine: str = Field(default="whisper_cpp", alias="WHISPER_ENGINE")  # whisper_cpp|faster_whisper
    whisper_model: str = Field(default="base", alias="WHISPER_MODEL")
    whisper_language: str = Field(default="auto", alias="WHISPER_LANGUAGE")
    audio_extract_timeout_s: int = Field(default=120, alias="AUDIO_EXTRACT_TIMEOUT_S")
    transcribe_timeout_s: int = Field(default=600, alias="TRANSCRIBE_TIMEOUT_S")

    # --- object storage ---
    storage_backend: str = Field(default="s3", alias="STORAGE_BACKEND")  # s3|local
    s3_endpoint: str | None = Field(default=None, alias="S3_ENDPOINT")
    # Endpoint browsers can reach; presigned URLs are signed against it.
    s3_public_url: str | None = Field(default=None, alias="S3_PUBLIC_URL")
    s3_region: str = Field(default="us-east-1", alias="S3_REGION")
    s3_bucket: str = Field(default="screencasts", alias="S3_BUCKET")
    storage_local_dir: Path | None = Field(default=None, alias="STORAGE_LOCAL_DIR")
    presign_expires_s: int = Field(default=3600, alias="PRESIGN_EXPIRES_S")

    def resolved_state_dir(self) -> Path:
        return Path(self.state_dir or (self.app_root / "_state")).resolve()

    def resolved_scratch_dir(self) -> Path:
        if self.scratch_dir:
            return Path(self.scratch_dir).resolve()
        return (Path(tempfile.gettempdir()) / "screencast-jobs").resolve()

    def resolved_storage_dir(self) -> Path:
        return Path(self.storage_local_dir or (self.resolved_state_dir() / "objects")).resolve()
