from dataclasses import dataclass
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_STORAGE_ROOT = PROJECT_ROOT / "storage"
DEFAULT_DB_PATH = DEFAULT_STORAGE_ROOT / "deckflow.db"

JOB_FAMILIES = ("generation", "export", "extraction")


@dataclass(frozen=True)
class QueuePolicy:
    family: str
    concurrency: int
    lease_seconds: float
    lease_renew_seconds: float
    max_attempts: int
    backoff_base_ms: int


class Settings(BaseSettings):
    app_name: str = "Deckflow Jobs API"
    api_prefix: str = "/api"

    storage_root: Path = DEFAULT_STORAGE_ROOT
    database_url: str = f"sqlite:///{DEFAULT_DB_PATH.as_posix()}"
    redis_url: str = "redis://localhost:6379/0"
    queue_prefix: str = "deckflow"
    renderer_url: str = "http://localhost:3001"
    renderer_timeout_seconds: int = 180
    public_base_url: str = "http://localhost:3000"
    default_pipeline: str = "mock"

    # Lease durations must outlast the slowest single pipeline stage (image generation).
    generation_concurrency: int = 2
    generation_lease_seconds: float = 300
    generation_lease_renew_seconds: float = 60
    generation_max_attempts: int = 3
    generation_backoff_base_ms: int = 1000

    export_concurrency: int = 1
    export_lease_seconds: float = 300
    export_lease_renew_seconds: float = 60
    export_max_attempts: int = 3
    export_backoff_base_ms: int = 2000

    extraction_concurrency: int = 2
    extraction_lease_seconds: float = 180
    extraction_lease_renew_seconds: float = 30
    extraction_max_attempts: int = 2
    extraction_backoff_base_ms: int = 1000

    progress_debounce_seconds: float = 1.0
    event_grace_seconds: float = 0.5
    completed_retention_seconds: int = 24 * 60 * 60
    failed_retention_seconds: int = 7 * 24 * 60 * 60
    stalled_scan_interval_seconds: int = 120
    reconcile_interval_seconds: int = 300
    reconcile_min_age_seconds: int = 120
    worker_poll_seconds: float = 1.0

    storage_signing_secret: str = "change-me"
    export_url_ttl_seconds: int = 7 * 24 * 60 * 60
    extraction_max_chars: int = 50000
    subscribe_idle_timeout_seconds: float = 300

    log_level: str = "INFO"
    verbose_job_trace: bool = True
    log_preview_chars: int = 180
    suppress_httpx_info_logs: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    def queue_policy(self, family: str) -> QueuePolicy:
        if family not in JOB_FAMILIES:
            raise ValueError(f"Unknown job family: {family}")
        return QueuePolicy(
            family=family,
            concurrency=max(1, int(getattr(self, f"{family}_concurrency"))),
            lease_seconds=float(getattr(self, f"{family}_lease_seconds")),
            lease_renew_seconds=float(getattr(self, f"{family}_lease_renew_seconds")),
            max_attempts=max(1, int(getattr(self, f"{family}_max_attempts"))),
            backoff_base_ms=int(getattr(self, f"{family}_backoff_base_ms")),
        )


settings = Settings()
