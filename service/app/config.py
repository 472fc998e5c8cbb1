from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Literal


class Settings(BaseSettings):
    # Telegram
    telegram_bot_token: str = ""
    telegram_webhook_secret: str = ""  # Optional: for webhook verification
    webhook_url: str = ""  # Public base URL, "/telegram/webhook" is appended
    bot_mode: Literal["webhook", "polling"] = "polling"

    # Environment
    environment: str = "development"
    log_level: str = "DEBUG"

    # Storage: "file" keeps JSON files in data_dir, "supabase" uses tables
    storage_backend: Literal["file", "supabase"] = "file"
    data_dir: str = "data"

    # Supabase (only required when storage_backend == "supabase")
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Duplicate update suppression
    processed_events_capacity: int = 1000
    processed_events_flush_every: int = 10

    # Registration dialogs
    # 0 disables expiry: an abandoned dialog waits until overwritten or cancelled
    session_ttl_hours: int = 0
    passenger_legal_name_step: bool = False

    # Shared secret for POST /notifications/dashboard
    notifications_secret: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
