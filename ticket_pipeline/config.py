"""Configuration management for the ticket ingestion pipeline."""

from typing import Literal

from decouple import Csv, config
from pydantic import BaseModel, Field, model_validator


class TrackerConfig(BaseModel):
    """Configuration for the external JIRA instance."""

    base_url: str = Field(..., description="JIRA instance base URL")
    username: str = Field(..., description="JIRA username (account email)")
    api_token: str = Field(..., description="JIRA API token")
    api_version: str = Field(default="2", description="REST API version used for search and field catalog")
    timeout_seconds: int = Field(default=30, description="Per-request timeout")


class StorageConfig(BaseModel):
    """Configuration for the local storage backend."""

    backend: Literal["sqlite", "duckdb"] = Field(default="sqlite", description="Storage engine")
    path: str = Field(default="data/tickets.db", description="Database file path or :memory:")


class RateLimitConfig(BaseModel):
    """Sliding-window limits for one rate limiter instance."""

    max_requests: int = Field(..., gt=0, description="Requests admitted per window")
    window_seconds: float = Field(..., gt=0, description="Window length in seconds")


class SyncSettings(BaseModel):
    """Tuning for synchronization sessions."""

    page_size: int = Field(default=100, gt=0, le=100, description="Records requested per page")
    max_retries: int = Field(default=3, ge=1, description="Attempts per tracker request")
    retry_delay_seconds: float = Field(default=1.0, ge=0, description="Initial back-off, doubled per attempt")
    default_excluded_types: list[str] = Field(
        default_factory=lambda: ["Sub-task"], description="Issue types skipped when none are given"
    )
    subscriber_buffer: int = Field(default=256, gt=0, description="Buffered progress events per subscriber")
    max_workers: int = Field(default=3, gt=0, description="Concurrent sessions")
    session_retention_days: int = Field(default=30, gt=0, description="Days to keep finished sessions")
    updates_lookback_hours: float = Field(
        default=24, gt=0, description="Window for finding updated projects when no sync has completed yet"
    )


class ScheduleConfig(BaseModel):
    """Periodic background synchronization."""

    enabled: bool = Field(default=False, description="Run syncs on a fixed interval")
    interval_seconds: float = Field(default=300, gt=0, description="Seconds between scheduled syncs")
    projects: list[str] = Field(default_factory=list, description="Projects to sync; empty means all visible")
    incremental: bool = Field(default=True, description="Only fetch records updated since the last sync")


class ExpertiseConfig(BaseModel):
    """Lookback window and tier thresholds for client expertise."""

    lookback_months: int = Field(default=6, gt=0, description="Assignment history window in months")
    expert_threshold: float = Field(default=100, gt=0, description="Hours for the Expert tier")
    intermediate_threshold: float = Field(default=40, ge=0, description="Hours for the Intermediate tier")

    @model_validator(mode="after")
    def _check_ascending(self) -> "ExpertiseConfig":
        if self.intermediate_threshold >= self.expert_threshold:
            raise ValueError("intermediate_threshold must be lower than expert_threshold")
        return self


class AppConfig(BaseModel):
    """Main pipeline configuration."""

    tracker: TrackerConfig
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api_rate_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(max_requests=100, window_seconds=60)
    )
    sync_rate_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(max_requests=5, window_seconds=300)
    )
    tracker_rate_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(max_requests=60, window_seconds=60)
    )
    sweep_interval_seconds: float = Field(default=60, gt=0, description="Rate limiter cleanup interval")
    sync: SyncSettings = Field(default_factory=SyncSettings)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    expertise: ExpertiseConfig = Field(default_factory=ExpertiseConfig)
    debug: bool = Field(default=False, description="Expose error detail in responses")
    log_level: str = Field(default="info", description="Minimum log level")
    log_json: bool = Field(default=True, description="Render logs as JSON lines")


def load_config() -> AppConfig:
    """Load configuration from environment variables."""
    return AppConfig(
        tracker=TrackerConfig(
            base_url=config("JIRA_BASE_URL"),
            username=config("JIRA_USERNAME"),
            api_token=config("JIRA_API_TOKEN"),
            api_version=config("JIRA_API_VERSION", default="2"),
            timeout_seconds=config("JIRA_TIMEOUT_SECONDS", default=30, cast=int),
        ),
        storage=StorageConfig(
            backend=config("STORAGE_BACKEND", default="sqlite"),
            path=config("STORAGE_PATH", default="data/tickets.db"),
        ),
        api_rate_limit=RateLimitConfig(
            max_requests=config("API_RATE_LIMIT_MAX", default=100, cast=int),
            window_seconds=config("API_RATE_LIMIT_WINDOW_SECONDS", default=60, cast=float),
        ),
        sync_rate_limit=RateLimitConfig(
            max_requests=config("SYNC_RATE_LIMIT_MAX", default=5, cast=int),
            window_seconds=config("SYNC_RATE_LIMIT_WINDOW_SECONDS", default=300, cast=float),
        ),
        tracker_rate_limit=RateLimitConfig(
            max_requests=config("TRACKER_RATE_LIMIT_MAX", default=60, cast=int),
            window_seconds=config("TRACKER_RATE_LIMIT_WINDOW_SECONDS", default=60, cast=float),
        ),
        sweep_interval_seconds=config("RATE_LIMIT_SWEEP_SECONDS", default=60, cast=float),
        sync=SyncSettings(
            page_size=config("SYNC_PAGE_SIZE", default=100, cast=int),
            max_retries=config("MAX_RETRIES", default=3, cast=int),
            retry_delay_seconds=config("RETRY_DELAY_SECONDS", default=1.0, cast=float),
            default_excluded_types=config("SYNC_EXCLUDED_TYPES", default="Sub-task", cast=Csv()),
            subscriber_buffer=config("PROGRESS_SUBSCRIBER_BUFFER", default=256, cast=int),
            max_workers=config("SYNC_MAX_WORKERS", default=3, cast=int),
            session_retention_days=config("SESSION_RETENTION_DAYS", default=30, cast=int),
            updates_lookback_hours=config("SYNC_UPDATES_LOOKBACK_HOURS", default=24, cast=float),
        ),
        schedule=ScheduleConfig(
            enabled=config("ENABLE_AUTO_SYNC", default=False, cast=bool),
            interval_seconds=config("SYNC_INTERVAL_SECONDS", default=300, cast=float),
            projects=config("SYNC_PROJECTS", default="", cast=Csv()),
            incremental=config("SYNC_INCREMENTAL", default=True, cast=bool),
        ),
        expertise=ExpertiseConfig(
            lookback_months=config("EXPERTISE_LOOKBACK_MONTHS", default=6, cast=int),
            expert_threshold=config("EXPERTISE_EXPERT_HOURS", default=100, cast=float),
            intermediate_threshold=config("EXPERTISE_INTERMEDIATE_HOURS", default=40, cast=float),
        ),
        debug=config("DEBUG", default=False, cast=bool),
        log_level=config("LOG_LEVEL", default="info"),
        log_json=config("LOG_JSON", default=True, cast=bool),
    )
