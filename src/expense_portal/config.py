"""Runtime settings and logging setup."""

from __future__ import annotations

import logging.config
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings read from ``EXPENSE_PORTAL_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(env_prefix="EXPENSE_PORTAL_", env_file=".env", extra="ignore")

    app_name: str = "Expense Portal API"
    database_path: str = "expense_portal.sqlite3"
    upload_root: Path = Path("uploads")
    export_root: Path = Path("exports")

    sla_days: int = 45
    send_back_roles: tuple[str, ...] = ("junior_admin",)
    honor_torch_bearer_skip: bool = False
    use_workflow_config: bool = True

    smtp_host: str | None = None
    smtp_port: int = 25
    smtp_sender: str = "no-reply@expense-portal.local"

    session_retention_days: int = 180
    bootstrap_admin_email: str | None = None

    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {"format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": level,
                },
            },
            "loggers": {
                "expense_portal": {"handlers": ["console"], "level": level, "propagate": False},
                "backend": {"handlers": ["console"], "level": level, "propagate": False},
            },
        }
    )
