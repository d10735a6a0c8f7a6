"""
Configuration settings for the application
"""

import os
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./progressive_dinner.db")
    USE_FIREBASE: bool = os.getenv("USE_FIREBASE", "false").lower() in ("1", "true", "yes")
    FIREBASE_CREDENTIALS_JSON: str | None = os.getenv("FIREBASE_CREDENTIALS_JSON")
    FIREBASE_CREDENTIALS_FILE: str | None = os.getenv("FIREBASE_CREDENTIALS_FILE")
    FIREBASE_CREDENTIALS_B64: str | None = os.getenv("FIREBASE_CREDENTIALS_B64")

    # Security
    ADMIN_TOKEN: str = os.getenv("ADMIN_TOKEN", "admin_token_123")

    # Event schedule
    EVENT_TIMEZONE: str = os.getenv("EVENT_TIMEZONE", "Europe/Stockholm")

    # Rematch lock
    REMATCH_LOCK_MINUTES: int = 5
    REMATCH_RETRY_ATTEMPTS: int = 3
    REMATCH_RETRY_DELAY_SECONDS: float = 2.0

    # Travel time lookup (haversine estimate when unset)
    OPENROUTESERVICE_API_KEY: str | None = os.getenv("OPENROUTESERVICE_API_KEY")
    TRAVEL_LOOKUP_TIMEOUT_SECONDS: float = 5.0

    # CORS
    ALLOW_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5000",
        "http://localhost:8000",
    ]

    # Rate limiting
    RATE_LIMIT_PER_MINUTE: int = 30

settings = Settings()
