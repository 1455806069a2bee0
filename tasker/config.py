"""Engine settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Tasker configuration. All values come from environment variables prefixed ``TASKER_``."""

    # Database
    database_path: Path = Field(default=Path("data/tasker.db"))

    # Scheduling
    default_timezone: str = Field(default="UTC")

    # Webhook triggers
    webhook_base_url: str = Field(default="/api")
    webhook_secret_bytes: int = Field(default=32, ge=16)

    # Notifications
    notification_webhook_url: str = Field(default="")

    # Action executors
    http_timeout_seconds: float = Field(default=20.0)

    # Read projections
    execution_history_limit: int = Field(default=50)
    upcoming_limit: int = Field(default=10)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="TASKER_",
        env_file=_env_file(),
        env_file_encoding="utf-8",
        extra="forbid",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)


settings = Settings()
