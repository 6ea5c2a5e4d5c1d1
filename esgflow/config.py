from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ESGFLOW_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "esgflow"
    log_level: str = "INFO"

    # SQLite file; defaults to esgflow/data/esgflow.db when unset.
    database_path: str | None = None

    # Minimum overall completeness (inclusive) before a report may be compiled.
    report_threshold: int = Field(80, ge=0, le=100)
    # Initiatives due within this many days are flagged at_risk.
    at_risk_window_days: int = Field(7, ge=0)

    autosave_interval_s: float = Field(30.0, gt=0)
    saved_flag_ttl_s: float = Field(2.0, ge=0)

    # Webhook delivery for workflow events; events are only logged when unset.
    webhook_url: str | None = None
    webhook_secret: str | None = None
    webhook_timeout_s: float = 2.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
