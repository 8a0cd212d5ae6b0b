from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Meeting Ingestion Pipeline"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    log_level: str = "INFO"

    fathom_api_url: str = "https://api.fathom.ai/external/v1"
    fathom_api_timeout_seconds: float = 15.0
    fathom_api_user_agent: str = "MeetingIngestionPipeline/1.0"
    fathom_webhook_secret: str = ""
    fathom_page_size: int = 100
    fathom_max_calls_per_sync: int = 10_000

    http_max_attempts: int = 3
    http_initial_backoff_seconds: float = 1.0

    incremental_sync_hours: int = 24
    initial_sync_days: int = 30
    manual_sync_days: int = 30
    all_time_sync_days: int = 90
    sync_lock_stale_after_minutes: int = 30

    cron_secret: str = ""
    cron_stale_after_hours: float = 6.0
    cron_gap_lookback_hours: int = 48
    cron_max_integrations_per_run: int = 50
    cron_time_budget_seconds: float = 240.0

    gemini_api_key: str = ""
    gemini_api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_upload_base_url: str = "https://generativelanguage.googleapis.com/upload/v1beta"
    gemini_api_timeout_seconds: float = 30.0

    index_queue_default_limit: int = 10
    index_queue_max_limit: int = 50
    index_queue_max_attempts: int = 5
    index_queue_backoff_base_seconds: float = 5.0
    index_min_transcript_chars: int = 100
    index_queue_concurrency: int = 1
    index_requests_per_second: float = 2.0

    data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "meeting_pipeline"
    mongodb_connect_timeout_ms: int = 2000
    mongodb_users_collection: str = "users"
    mongodb_integrations_collection: str = "fathom_integrations"
    mongodb_sync_state_collection: str = "fathom_sync_state"
    mongodb_meetings_collection: str = "meetings"
    mongodb_meeting_attendees_collection: str = "meeting_attendees"
    mongodb_meeting_action_items_collection: str = "meeting_action_items"
    mongodb_contacts_collection: str = "contacts"
    mongodb_companies_collection: str = "companies"
    mongodb_index_queue_collection: str = "meeting_index_queue"
    mongodb_file_search_index_collection: str = "meeting_file_search_index"
    mongodb_file_search_stores_collection: str = "user_file_search_stores"
    mongodb_cron_job_logs_collection: str = "cron_job_logs"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("data_store", mode="before")
    @classmethod
    def normalize_data_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @field_validator("fathom_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_fathom_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 15.0
        return parsed_value

    @field_validator("gemini_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_gemini_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 30.0
        return parsed_value

    @field_validator("fathom_page_size", mode="before")
    @classmethod
    def normalize_page_size(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 100
        return min(parsed_value, 100)

    @field_validator("http_max_attempts", "index_queue_concurrency", mode="before")
    @classmethod
    def normalize_positive_count(cls, value: int | str) -> int:
        return max(int(value), 1)

    @field_validator("index_requests_per_second", mode="before")
    @classmethod
    def normalize_requests_per_second(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 2.0
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
