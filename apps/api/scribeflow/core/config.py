"""Application configuration."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_MEDIA_EXTENSIONS = [".mp3", ".wav", ".mp4", ".m4a", ".mkv", ".mov", ".avi", ".flac", ".aac"]


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    provider: Literal["mock", "assemblyai"] = "assemblyai"
    media_toolkit: Literal["mock", "ffmpeg"] = "ffmpeg"
    provider_api_key: str | None = None
    provider_base_url: str = "https://api.assemblyai.com/v2"

    # Phase-level retry budget per job.
    max_job_attempts: int = 3
    poll_interval_seconds: float = 5.0
    max_poll_duration_seconds: float = 7200.0
    cancel_remote_on_abort: bool = False

    # Per-call resilience policy.
    max_retry_attempts: int = 3
    initial_retry_delay_ms: int = 1000
    retry_backoff_exponent: float = 2.0
    max_retry_delay_ms: int = 30000
    retry_on_request_timeout: bool = True
    request_timeout_seconds: float = 30.0
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_sampling_seconds: float = 30.0
    circuit_breaker_break_seconds: float = 60.0

    transcripts_dir: Path = Path("transcripts")
    work_dir: Path = Path(".scribeflow/work")
    content_store_dir: Path | None = None
    media_extensions: list[str] = list(_DEFAULT_MEDIA_EXTENSIONS)

    enable_silence_detection: bool = True
    silence_threshold_db: float = -30.0
    min_silence_duration_seconds: float = 10.0
    ffmpeg_path: str = "ffmpeg"

    model_config = SettingsConfigDict(env_prefix="SCRIBEFLOW_", extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
