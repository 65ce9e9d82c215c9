import os
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    sqlalchemy_echo: bool = False
    db_drop_and_recreate: bool = False  # If True: drops all tables and recreates (dev mode)

    database_url: str
    redis_url: str
    cors_origins: list[str] = ["*"]

    log_dir: Path = Path("logs")
    metrics_db_path: Path | None = None  # None disables the metrics event log

    # remote text-to-speech API (ElevenLabs compatible)
    tts_api_url: str = "https://api.elevenlabs.io/v1/text-to-speech"
    tts_api_key: str | None = None
    tts_default_voice_id: str = "pqHfZKP75CvOlQylNhV4"
    synthesis_timeout_s: float = 30.0
    storage_timeout_s: float = 30.0

    # worker pool
    worker_concurrency: int = 2
    run_workers_in_gateway: bool = False  # If False: workers run via `python -m voicetip.workers`
    worker_poll_interval_s: float = 0.5

    # retry policy applied to every enqueued job
    job_max_attempts: int = 3
    job_backoff_delay_ms: int = 5000
    job_max_backoff_delay_ms: int = 5 * 60 * 1000

    # visibility timeout for claimed jobs
    stall_timeout_s: int = 120
    stall_scan_interval_s: int = 15

    # artifact storage
    use_remote_storage: bool = True
    local_storage_path: Path = Path("public/tts_audios")
    local_public_url: str = ""  # prefix for local artifact URLs, e.g. https://api.example.com
    s3_bucket_name: str | None = None
    s3_region: str | None = None
    s3_endpoint_url: str | None = None
    s3_public_url: str | None = None  # CDN / custom domain in front of the bucket
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None

    notification_buffer_size: int = 1000
    download_retry_after_s: int = 5

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=[os.getenv("ENV_FILE", ""), ".env"],
        extra="ignore",
        env_nested_delimiter="__",
    )

    @model_validator(mode="after")
    def _attempt_fits_stall_timeout(self) -> "Settings":
        # a healthy attempt must finish before the scanner treats its claim as stalled
        budget = self.synthesis_timeout_s + self.storage_timeout_s
        if budget >= self.stall_timeout_s:
            raise ValueError(
                f"synthesis_timeout_s + storage_timeout_s ({budget}s) must be below stall_timeout_s "
                f"({self.stall_timeout_s}s)"
            )
        return self

    @property
    def remote_storage_configured(self) -> bool:
        return bool(self.s3_bucket_name and self.s3_region)


def get_settings() -> Settings:  # ty: ignore[invalid-return-type]
    """This is only used for dependency references, see __init__.py:

    app.dependency_overrides[get_settings] = lambda: Settings()  # type: ignore
    """
    ...
