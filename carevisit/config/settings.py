import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_database_url() -> str:
    """Get database URL, using absolute path for SQLite to avoid path resolution issues.

    The SQLite fallback is for local development only. Set DATABASE_URL to a
    PostgreSQL connection string for any shared deployment.
    """
    db_url = os.getenv("DATABASE_URL", "")
    if db_url:
        logger.info(f"Using DATABASE_URL from environment: {db_url}")
        return db_url

    db_path = Path(__file__).parent.parent.parent / "carevisit.db"
    abs_path = db_path.resolve()
    db_url = f"sqlite:///{abs_path}"
    logger.warning(f"Using SQLite database (LOCAL DEV ONLY): {db_url}")
    return db_url


class Settings(BaseSettings):
    facility_timezone: str = Field(
        default="UTC",
        validation_alias="FACILITY_TIMEZONE",
        description="IANA name of the single facility timezone",
    )
    recurrence_max_occurrences: int = Field(
        default=366,
        ge=1,
        validation_alias="RECURRENCE_MAX_OCCURRENCES",
        description="Hard cap on dates generated from one recurrence rule",
    )
    commit_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias="COMMIT_TIMEOUT_SECONDS",
        description="Default deadline for batch visit creation",
    )
    commit_cancel_grace_seconds: float = Field(
        default=5.0,
        ge=0,
        validation_alias="COMMIT_CANCEL_GRACE_SECONDS",
        description="How long a timed-out commit waits for the cancelled write to settle",
    )
    conflict_check_workers: int = Field(
        default=4,
        ge=1,
        validation_alias="CONFLICT_CHECK_WORKERS",
        description="Thread pool width for conflict checks during preview build",
    )
    cumulative_authorization_units: bool = Field(
        default=True,
        validation_alias="CUMULATIVE_AUTHORIZATION_UNITS",
        description="Count units of earlier occurrences in the same preview against the authorization",
    )
    minutes_per_unit: int = Field(default=15, ge=1, validation_alias="MINUTES_PER_UNIT")
    preview_idle_ttl_minutes: int = Field(default=60, ge=1, validation_alias="PREVIEW_IDLE_TTL_MINUTES")
    directory_service_url: str = Field(
        default="http://localhost:8080/api",
        validation_alias="DIRECTORY_SERVICE_URL",
        description="Base URL of the client/staff/authorization directory service",
    )
    directory_service_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias="DIRECTORY_SERVICE_TIMEOUT_SECONDS",
    )
    database_url: str = Field(
        default_factory=get_database_url,
        validation_alias="DATABASE_URL",
    )
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    log_rotation: str = Field(default="10 MB", validation_alias="LOG_ROTATION")
    log_retention: str = Field(default="7 days", validation_alias="LOG_RETENTION")
    log_json: bool = Field(default=False, validation_alias="LOG_JSON", description="Write the file sink as JSON lines")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(valid_levels)}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("facility_timezone")
    @classmethod
    def validate_facility_timezone(cls, value: str) -> str:
        """Validate the facility timezone against the IANA database."""
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown FACILITY_TIMEZONE '{value}'. Defaulting to UTC.")
            return "UTC"
        return value

    @property
    def facility_tz(self) -> ZoneInfo:
        return ZoneInfo(self.facility_timezone)


settings = Settings()
