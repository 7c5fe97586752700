from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "audit-queue"
    environment: str = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    replica_database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    queue_secret: str | None = None
    admin_secret: str | None = None
    host_limit_seconds: float = 10.0
    safety_margin_seconds: float = 1.5
    allow_background_after_deadline: bool = False
    stuck_threshold_seconds: float = 600.0
    max_retries: int = 3
    repair_batch_size: int = 100
    repair_on_invocation: bool = True
    reservation_liveness_seconds: float = 120.0
    reservation_hard_ceiling_seconds: float = 1800.0
    reconcile_max_attempts: int = 3
    reconcile_backoff_seconds: tuple[float, ...] = (0.5, 1.0, 2.0)
    reconcile_final_check_delay_seconds: float = 3.0
    reconcile_settled_after_seconds: float = 60.0
    check_timeout_seconds: float = 6.0
    notify_timeout_seconds: float = 5.0
    resend_api_key: str | None = None
    resend_api_url: str = "https://api.resend.com/emails"
    mail_from: str = "Site Audit <onboarding@resend.dev>"
    site_url: str = "http://localhost:8000"
    send_failure_notifications: bool = False
    otel_enabled: bool = True
    otel_service_name: str = "audit-queue"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="AQ_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
