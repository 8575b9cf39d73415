import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_service_role_key: str = Field(default="", alias="SUPABASE_SERVICE_ROLE_KEY")
    supabase_jobs_table: str = Field(default="sync_jobs", alias="SUPABASE_JOBS_TABLE")
    supabase_destinations_table: str = Field(default="gcp_project_connections", alias="SUPABASE_DESTINATIONS_TABLE")
    supabase_sheets_table: str = Field(default="managed_sheets", alias="SUPABASE_SHEETS_TABLE")
    supabase_ftp_sources_table: str = Field(default="ftp_sources", alias="SUPABASE_FTP_SOURCES_TABLE")
    supabase_runs_table: str = Field(default="job_runs", alias="SUPABASE_RUNS_TABLE")

    google_service_account_file: str = Field(default="", alias="GOOGLE_SERVICE_ACCOUNT_FILE")

    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    scheduler_poll_interval_seconds: int = Field(default=60, alias="SCHEDULER_POLL_INTERVAL_SECONDS")
    scheduler_lookback_seconds: int = Field(default=60, alias="SCHEDULER_LOOKBACK_SECONDS")
    scheduler_max_workers: int = Field(default=4, alias="SCHEDULER_MAX_WORKERS")
    scheduler_stale_run_seconds: int = Field(default=21600, alias="SCHEDULER_STALE_RUN_SECONDS")

    bigquery_job_timeout_seconds: float = Field(default=600.0, alias="BIGQUERY_JOB_TIMEOUT_SECONDS")
    bigquery_job_poll_seconds: float = Field(default=2.0, alias="BIGQUERY_JOB_POLL_SECONDS")
    ftp_connect_timeout_seconds: float = Field(default=15.0, alias="FTP_CONNECT_TIMEOUT_SECONDS")
    staging_prefix: str = Field(default="staging", alias="STAGING_PREFIX")

    notification_webhook_url: str = Field(default="", alias="NOTIFICATION_WEBHOOK_URL")
    notification_date_format: str = Field(default="%Y-%m-%d", alias="NOTIFICATION_DATE_FORMAT")

    app_timezone: str = Field(default="UTC", alias="APP_TIMEZONE")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


@lru_cache
def get_settings() -> Settings:
    settings = Settings()
    configure_logging(settings.log_level)
    return settings
