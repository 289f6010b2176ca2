from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Meeting Bot Orchestrator API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    frontend_base_url: str = "http://localhost:5173"

    data_store: str = "mongodb"
    user_data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "meeting_bots"
    mongodb_meetings_collection: str = "meetings"
    mongodb_transcripts_collection: str = "transcripts"
    mongodb_calendar_connections_collection: str = "calendar_connections"
    mongodb_platform_connections_collection: str = "platform_connections"
    mongodb_notification_outbox_collection: str = "notification_outbox"
    mongodb_users_collection: str = "users"
    mongodb_notification_preferences_collection: str = "notification_preferences"
    mongodb_connect_timeout_ms: int = 2000

    auth_secret_key: str = "change-me-in-production"
    auth_token_ttl_minutes: int = 60 * 12
    default_admin_email: str = "admin"
    default_admin_password: str = "admin"
    default_admin_full_name: str = "Administrator"

    zoom_webhook_secret_token: str = ""
    zoom_client_id: str = ""
    zoom_client_secret: str = ""
    zoom_redirect_uri: str = "http://localhost:8000/api/integrations/zoom/callback"
    zoom_oauth_authorize_url: str = "https://zoom.us/oauth/authorize"
    zoom_oauth_token_url: str = "https://zoom.us/oauth/token"
    zoom_api_url: str = "https://api.zoom.us/v2"
    zoom_api_timeout_seconds: float = 15.0

    google_calendar_client_id: str = ""
    google_calendar_client_secret: str = ""
    google_calendar_redirect_uri: str = (
        "http://localhost:8000/api/integrations/google-calendar/callback"
    )
    google_calendar_id: str = "primary"
    google_calendar_api_timeout_seconds: float = 10.0
    calendar_sync_window_hours: int = 24
    calendar_sync_interval_minutes: int = 15
    calendar_sync_secret: str = ""

    bot_callback_secret: str = ""
    bot_callback_url: str = "http://localhost:8000/api/bots/callback"
    # Requests are sent unsigned; must point at a SigV4 signing proxy.
    ecs_api_url: str = ""
    ecs_cluster: str = "zoom-bot-cluster"
    ecs_zoom_task_definition: str = "zoom-bot-task"
    ecs_gmeet_task_definition: str = "gmeet-bot-task"
    ecs_zoom_container_name: str = "zoom-bot"
    ecs_gmeet_container_name: str = "gmeet-bot"
    ecs_subnets: Annotated[list[str], NoDecode] = []
    ecs_security_groups: Annotated[list[str], NoDecode] = []
    task_launch_timeout_seconds: float = 15.0
    task_launch_max_attempts: int = 3
    task_launch_backoff_seconds: float = 1.0

    bot_coordinator_url: str = ""
    bot_secret: str = ""
    bot_coordinator_timeout_seconds: float = 20.0

    # Requests are sent unsigned; must point at a SigV4 signing proxy.
    email_api_url: str = ""
    email_api_key: str = ""
    email_from_address: str = "noreply@meetingbots.app"
    email_api_timeout_seconds: float = 10.0
    notification_max_attempts: int = 5
    notification_retry_base_seconds: int = 60
    notification_outbox_interval_seconds: int = 60

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("allowed_origins", "ecs_subnets", "ecs_security_groups", mode="before")
    @classmethod
    def parse_comma_separated(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("data_store", "user_data_store", mode="before")
    @classmethod
    def normalize_store_name(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator(
        "zoom_api_timeout_seconds",
        "google_calendar_api_timeout_seconds",
        "task_launch_timeout_seconds",
        "bot_coordinator_timeout_seconds",
        "email_api_timeout_seconds",
        mode="before",
    )
    @classmethod
    def normalize_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("task_launch_max_attempts", "notification_max_attempts", mode="before")
    @classmethod
    def normalize_attempts(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 1
        return parsed_value

    @field_validator("calendar_sync_window_hours", mode="before")
    @classmethod
    def normalize_sync_window(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 24
        return parsed_value

    @field_validator("auth_token_ttl_minutes", mode="before")
    @classmethod
    def normalize_auth_token_ttl(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 60 * 12
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
