from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global settings for the academy billing service.
    Values are read from the environment and from the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "Academy Billing API"
    api_v1_str: str = "/api/v1"
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Database
    database_url: str = "sqlite:///./dev.db"

    # Academies without an explicit zone bill on this calendar
    default_timezone: str = "Asia/Seoul"

    # Billing / Toss Payments
    billing_max_attempts: int = 3
    toss_secret_key: Optional[str] = None
    toss_client_key: Optional[str] = None
    toss_base_url: str = "https://api.tosspayments.com"
    toss_timeout_seconds: float = 30.0

    # Kakao AlimTalk (Aligo BizMessage)
    kakao_api_key: Optional[str] = None
    kakao_user_id: Optional[str] = None
    kakao_base_url: str = "https://kakaoapi.aligo.in"
    kakao_timeout_seconds: float = 10.0

    # Notification queue worker
    notification_batch_size: int = 50
    notification_max_attempts: int = 3
    notification_backoff_minutes: List[int] = [5, 30, 120]

    # Internal cron routes
    cron_secret: Optional[str] = None


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()


settings = get_settings()
