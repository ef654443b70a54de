from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "Quote Approvals"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    PORT: int = 8000

    # "memory" keeps records in-process; "sql" uses the records table
    STORE_BACKEND: str = "memory"
    DATABASE_URL: str = ""
    DATABASE_SYNC_URL: str = ""
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_RECYCLE: int = 300

    SCHEDULER_ENABLED: bool = False
    SCHEDULER_INTERVAL_SECONDS: int = 300
    SCHEDULER_CONCURRENCY: int = 10

    BUSINESS_TIMEZONE: str = "UTC"
    BUSINESS_HOURS_START: int = 9
    BUSINESS_HOURS_END: int = 17

    NOTIFICATIONS_PER_HOUR: int = 200
    ESCALATIONS_PER_DAY: int = 50
    NOTIFICATION_DEDUP_MINUTES: int = 60
    MAX_DELIVERY_ATTEMPTS: int = 3

    BREVO_API_KEY: Optional[str] = None
    EMAIL_FROM_ADDRESS: str = "noreply@quotes.example.com"
    DIRECTORY_URL: Optional[str] = None
    DIRECTORY_JSON: str = "{}"
    INTERNAL_JOB_SECRET: Optional[str] = None  # Required in production for /internal/jobs/* auth
    CORS_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
