"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Provider queue APIs (fal-ai is always enabled, laozhang-ai once its key is set)
    queue_base_url: str = Field(default="https://queue.fal.run", alias="QUEUE_BASE_URL")
    queue_api_key: str = Field(default="", alias="QUEUE_API_KEY")
    laozhang_base_url: str = Field(default="https://api.laozhang.ai", alias="LAOZHANG_BASE_URL")
    laozhang_api_key: str = Field(default="", alias="LAOZHANG_API_KEY")
    submit_timeout_seconds: float = Field(default=15.0, alias="SUBMIT_TIMEOUT_SECONDS")
    status_timeout_seconds: float = Field(default=15.0, alias="STATUS_TIMEOUT_SECONDS")
    result_timeout_seconds: float = Field(default=120.0, alias="RESULT_TIMEOUT_SECONDS")

    # Polling
    poll_interval_seconds: float = Field(default=2.0, alias="POLL_INTERVAL_SECONDS")
    max_wait_seconds: float = Field(default=300.0, alias="MAX_WAIT_SECONDS")
    worker_batch_size: int = Field(default=20, alias="WORKER_BATCH_SIZE")
    job_timeout_seconds: int = Field(default=1800, alias="JOB_TIMEOUT_SECONDS")

    # Pricing
    points_per_image: int = Field(default=2, alias="POINTS_PER_IMAGE")
    points_per_image_pro: dict[str, int] = Field(
        default={"1K": 4, "2K": 6, "4K": 10}, alias="POINTS_PER_IMAGE_PRO"
    )
    points_per_image_seedream: int = Field(default=3, alias="POINTS_PER_IMAGE_SEEDREAM")

    # Provider selection: per-model active provider (persisted, created lazily with
    # DEFAULT_PROVIDER), then the other providers serving the model in PROVIDER_ORDER
    default_provider: str = Field(default="fal-ai", alias="DEFAULT_PROVIDER")
    provider_order: list[str] = Field(
        default=["fal-ai", "laozhang-ai"], alias="PROVIDER_ORDER"
    )

    # Provider balance-exhausted detection (HTTP 403 body phrases, lower-case)
    balance_exhausted_phrases: list[str] = Field(
        default=["exhausted balance", "user is locked", "top up your balance"],
        alias="BALANCE_EXHAUSTED_PHRASES",
    )

    # Admin alerts
    admin_alert_webhook_url: str = Field(default="", alias="ADMIN_ALERT_WEBHOOK_URL")
    admin_alert_cooldown_seconds: int = Field(default=3600, alias="ADMIN_ALERT_COOLDOWN_SECONDS")

    default_aspect_ratio: str = Field(default="1:1", alias="DEFAULT_ASPECT_RATIO")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with a single error listing every missing variable.
        Validation is skipped in test/development environments.
        """
        if self.app_env in ("test", "testing", "development"):
            return self

        missing = []

        if not self.queue_api_key:
            missing.append("QUEUE_API_KEY: API key for the provider queue (sent as 'Key <key>')")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        renderer_processors = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer_processors = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderer_processors,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
