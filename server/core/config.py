"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables.

    Resolved once at startup and passed into every service constructor.
    """

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=3010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    cors_origins: List[str] = Field(default=["*"], env="CORS_ORIGINS")

    # Cache Configuration
    cache_backend: Literal["memory", "redis", "sqlite", "file"] = Field(default="memory", env="CACHE_BACKEND")
    cache_fallback_to_memory: bool = Field(default=True, env="CACHE_FALLBACK_TO_MEMORY")
    cache_ttl: int = Field(default=3600, env="CACHE_TTL", ge=1)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    database_url: str = Field(default="sqlite+aiosqlite:///./data/cache.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    cache_file_dir: str = Field(default="mock-data/cached-data", env="CACHE_FILE_DIR")
    cache_sweep_interval_seconds: int = Field(default=300, env="CACHE_SWEEP_INTERVAL_SECONDS", ge=1)

    # Request Queue
    queue_use_durable: bool = Field(default=False, env="QUEUE_USE_DURABLE")
    qstash_url: str = Field(default="https://qstash.upstash.io/v2", env="QSTASH_URL")
    qstash_token: Optional[str] = Field(default=None, env="QSTASH_TOKEN")
    qstash_current_signing_key: Optional[str] = Field(default=None, env="QSTASH_CURRENT_SIGNING_KEY")
    qstash_next_signing_key: Optional[str] = Field(default=None, env="QSTASH_NEXT_SIGNING_KEY")
    qstash_timeout_ms: int = Field(default=10000, env="QSTASH_TIMEOUT_MS", ge=100)
    queue_callback_base_url: Optional[str] = Field(default=None, env="QUEUE_CALLBACK_BASE_URL")
    queue_workers: int = Field(default=4, env="QUEUE_WORKERS", ge=1, le=64)
    queue_max_jobs: int = Field(default=1000, env="QUEUE_MAX_JOBS", ge=1)
    queue_max_retries: int = Field(default=3, env="QUEUE_MAX_RETRIES", ge=0, le=10)
    queue_base_delay_ms: int = Field(default=1000, env="QUEUE_BASE_DELAY_MS", ge=0)
    queue_max_delay_ms: int = Field(default=60000, env="QUEUE_MAX_DELAY_MS", ge=0)
    queue_default_timeout_ms: int = Field(default=30000, env="QUEUE_DEFAULT_TIMEOUT_MS", ge=100)
    queue_poll_interval_ms: int = Field(default=2000, env="QUEUE_POLL_INTERVAL_MS", ge=10)
    queue_job_retention_seconds: int = Field(default=86400, env="QUEUE_JOB_RETENTION_SECONDS", ge=1)
    queue_sweep_interval_seconds: int = Field(default=60, env="QUEUE_SWEEP_INTERVAL_SECONDS", ge=1)
    queue_shutdown_grace_seconds: float = Field(default=5.0, env="QUEUE_SHUTDOWN_GRACE_SECONDS", ge=0)

    # Request protocol
    sync_fetch_timeout_ms: int = Field(default=60000, env="SYNC_FETCH_TIMEOUT_MS", ge=100)
    parse_default_timeout_ms: int = Field(default=60000, env="PARSE_DEFAULT_TIMEOUT_MS", ge=100)

    # Upstream APIs
    opendota_api_base_url: str = Field(default="https://api.opendota.com/api", env="OPENDOTA_API_BASE_URL")
    opendota_api_key: Optional[str] = Field(default=None, env="OPENDOTA_API_KEY")
    opendota_api_timeout: int = Field(default=10000, env="OPENDOTA_API_TIMEOUT", ge=100)
    opendota_parse_poll_interval_ms: int = Field(default=2000, env="OPENDOTA_PARSE_POLL_INTERVAL_MS", ge=10)
    use_mock_api: bool = Field(default=False, env="USE_MOCK_API")
    mock_data_dir: str = Field(default="mock-data", env="MOCK_DATA_DIR")

    # Rate limiting (memory window per process, or shared through Redis)
    rate_limit_enabled: bool = Field(default=True, env="RATE_LIMIT_ENABLED")
    rate_limit_requests: int = Field(default=60, env="RATE_LIMIT_REQUESTS", ge=1)
    rate_limit_window: int = Field(default=60, env="RATE_LIMIT_WINDOW", ge=1)
    rate_limit_backend: Literal["memory", "redis"] = Field(default="memory", env="RATE_LIMIT_BACKEND")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("queue_callback_base_url")
    @classmethod
    def strip_callback_slash(cls, v):
        return v.rstrip("/") if v else v

    @property
    def durable_queue_configured(self) -> bool:
        """Durable backend needs the flag, a token and a public callback URL."""
        return bool(self.queue_use_durable and self.qstash_token and self.queue_callback_base_url)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
