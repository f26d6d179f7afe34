"""IncidentDesk configuration loaded from environment variables."""

from __future__ import annotations

import json
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./incidentdesk.db",
        alias="DATABASE_URL",
    )
    auto_create_schema: bool = Field(default=True, alias="AUTO_CREATE_SCHEMA")
    db_pool_size: int = Field(default=10, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, alias="DB_MAX_OVERFLOW")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    cors_origins: str = Field(default='["http://localhost:3000"]', alias="CORS_ORIGINS")
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="text", alias="LOG_FORMAT")  # text or json
    rate_limit_default: str = Field(default="100/minute", alias="RATE_LIMIT_DEFAULT")
    strict_startup_validation: bool = Field(default=False, alias="STRICT_STARTUP_VALIDATION")

    # Auth
    jwt_secret: str = Field(default="change-me-in-production-incidentdesk", alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_expire_minutes: int = Field(default=60 * 24, alias="JWT_EXPIRE_MINUTES")

    # SLA policy: resolution targets in hours, first response in minutes
    sla_hours_critical: float = Field(default=1, alias="SLA_HOURS_CRITICAL")
    sla_hours_high: float = Field(default=4, alias="SLA_HOURS_HIGH")
    sla_hours_medium: float = Field(default=24, alias="SLA_HOURS_MEDIUM")
    sla_hours_low: float = Field(default=72, alias="SLA_HOURS_LOW")
    sla_response_minutes_critical: float = Field(default=15, alias="SLA_RESPONSE_MINUTES_CRITICAL")
    sla_response_minutes_high: float = Field(default=30, alias="SLA_RESPONSE_MINUTES_HIGH")
    sla_response_minutes_medium: float = Field(default=120, alias="SLA_RESPONSE_MINUTES_MEDIUM")
    sla_response_minutes_low: float = Field(default=480, alias="SLA_RESPONSE_MINUTES_LOW")
    sla_warning_minutes: float = Field(default=30, alias="SLA_WARNING_MINUTES")
    sla_recompute_on_retriage: bool = Field(default=False, alias="SLA_RECOMPUTE_ON_RETRIAGE")
    sla_overrides_path: str = Field(default="./sla_overrides.json", alias="SLA_OVERRIDES_PATH")

    # SLA breach sweep (off by default; breach state is otherwise computed on read)
    sla_sweep_enabled: bool = Field(default=False, alias="SLA_SWEEP_ENABLED")
    sla_sweep_interval_seconds: int = Field(default=300, alias="SLA_SWEEP_INTERVAL_SECONDS")

    # Assignment
    default_max_workload: int = Field(default=10, alias="DEFAULT_MAX_WORKLOAD")

    # Attachments
    attachment_dir: str = Field(default="./attachments", alias="ATTACHMENT_DIR")
    attachment_max_bytes: int = Field(default=10 * 1024 * 1024, alias="ATTACHMENT_MAX_BYTES")

    # Notifications — Email (Resend)
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    notification_from_email: str = Field(default="incidents@incidentdesk.local", alias="NOTIFICATION_FROM_EMAIL")

    # Notifications — Slack
    slack_webhook_url: str = Field(default="", alias="SLACK_WEBHOOK_URL")

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"production", "prod"}

    @property
    def cors_origins_list(self) -> list[str]:
        raw = (self.cors_origins or "").strip()
        if not raw:
            return []

        # Supports JSON list format and comma-separated format.
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(origin).strip() for origin in parsed if str(origin).strip()]
            except json.JSONDecodeError:
                pass

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
