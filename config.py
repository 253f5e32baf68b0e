from typing import List, Optional

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    # =========================
    # Environment
    # =========================
    ENV: str = Field(default="dev")
    LOG_LEVEL: str = Field(default="INFO")

    # =========================
    # Database (api keys, access logs, business tables)
    # =========================
    DATABASE_URL: str = Field(default="sqlite:///./gateway.db")
    CREATE_TABLES_ON_STARTUP: bool = Field(default=False)

    # =========================
    # Per-role database users (business tables); unset means DATABASE_URL
    # =========================
    MARKETING_DATABASE_URL: Optional[str] = Field(default=None)
    AUDITOR_DATABASE_URL: Optional[str] = Field(default=None)
    DATA_STEWARD_DATABASE_URL: Optional[str] = Field(default=None)

    # =========================
    # Redis (customer segments)
    # =========================
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # =========================
    # Access log buffer
    # =========================
    ACCESS_LOG_FLUSH_INTERVAL_MS: int = Field(default=60_000)
    ACCESS_LOG_MAX_BUFFER_SIZE: int = Field(default=5_000)

    # =========================
    # Background tasks (usage counters)
    # =========================
    BACKGROUND_QUEUE_MAX_SIZE: int = Field(default=10_000)
    SHUTDOWN_DRAIN_TIMEOUT: float = Field(default=5.0)

    # =========================
    # Access control
    # =========================
    # allowed_ips is stored on every key but only checked when this is on
    ENFORCE_ALLOWED_IPS: bool = Field(default=False)
    CORS_ALLOWED_ORIGINS: List[str] = Field(default=["https://aeabd.pt"])

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


# Singleton
settings = Settings()
