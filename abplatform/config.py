"""Configuration management.

Reads settings from env vars (and a local .env file if there is one).
"""
import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    """App settings loaded from environment variables"""

    # Database
    database_url: str = os.getenv(
        "DATABASE_URL",
        "sqlite:///./ab_platform.db"
    )

    # Flag snapshot cache - short TTL so toggles on other nodes show up quickly
    flag_cache_ttl: int = int(os.getenv("FLAG_CACHE_TTL", "30"))
    flag_cache_max_size: int = int(os.getenv("FLAG_CACHE_MAX_SIZE", "10000"))

    # Environment new experiments/flags land in when none is given
    default_environment: str = os.getenv("DEFAULT_ENVIRONMENT", "development")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
