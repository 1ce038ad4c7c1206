"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "3000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///kontrivibe.db")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET", "kontrivibe-dev-secret-change-in-prod")

    # Fapshi (mobile money payments)
    FAPSHI_BASE_URL = os.getenv("FAPSHI_BASE_URL", "https://live.fapshi.com")
    FAPSHI_API_USER = os.getenv("FAPSHI_API_USER", "")
    FAPSHI_API_KEY = os.getenv("FAPSHI_API_KEY", "")
    FAPSHI_TIMEOUT_SECONDS = float(os.getenv("FAPSHI_TIMEOUT_SECONDS", "15"))

    # Billing
    PAYMENT_LINK_TTL_MINUTES = int(os.getenv("PAYMENT_LINK_TTL_MINUTES", "15"))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "XAF")
    BRAND_NAME = os.getenv("BRAND_NAME", "KontriVibe")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
