from pathlib import Path

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _local_sqlite_url() -> str:
    """SQLite file at the project root, used when DATABASE_URL is unset.

    Local development only. Deployments point DATABASE_URL at PostgreSQL.
    """
    path = (Path(__file__).parent.parent.parent / "carebase.db").resolve()
    logger.warning("[SETTINGS] DATABASE_URL not set, falling back to local SQLite", path=str(path))
    return f"sqlite:///{path}"


class Settings(BaseSettings):
    """Scheduler configuration, read from the environment or a .env file."""

    database_url: str = Field(default_factory=_local_sqlite_url, validation_alias="DATABASE_URL")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    log_json: bool = Field(default=False, validation_alias="LOG_JSON")

    # Hard safety cap on generated dates, applied regardless of caller bounds
    scheduling_max_occurrences: int = Field(default=730, validation_alias="SCHEDULING_MAX_OCCURRENCES")
    # Horizon used when a recurrence has neither an end date nor a count
    scheduling_default_horizon_days: int = Field(default=731, validation_alias="SCHEDULING_DEFAULT_HORIZON_DAYS")
    scheduling_allow_past_start: bool = Field(default=False, validation_alias="SCHEDULING_ALLOW_PAST_START")

    authorization_expiry_warning_days: int = Field(default=30, validation_alias="AUTHORIZATION_EXPIRY_WARNING_DAYS")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator(
        "scheduling_max_occurrences",
        "scheduling_default_horizon_days",
        "authorization_expiry_warning_days",
    )
    @classmethod
    def _must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"must be a positive integer, got {value}")
        return value


settings = Settings()
