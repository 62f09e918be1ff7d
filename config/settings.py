"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///clicktrail.db")

    # Public base URL used to build absolute tracking links (e.g. https://trk.example.com)
    API_BASE_URL = os.getenv("API_BASE_URL", "")

    # Where visitors land when anything in the redirect flow blows up
    FALLBACK_URL = os.getenv("FALLBACK_URL", "https://example.com")

    # Redirect follower
    MAX_HOPS = int(os.getenv("MAX_HOPS", "10"))
    HOP_TIMEOUT_SECONDS = float(os.getenv("HOP_TIMEOUT_SECONDS", "5"))
    HOP_RETRIES = int(os.getenv("HOP_RETRIES", "0"))
    FOLLOWER_USER_AGENT = os.getenv(
        "FOLLOWER_USER_AGENT",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    )

    # Click deduplication: same IP + campaign within this window reuses the click id.
    # 0 = unbounded lookback.
    DEDUP_WINDOW_HOURS = float(os.getenv("DEDUP_WINDOW_HOURS", "24"))
    SESSION_COOKIE = os.getenv("SESSION_COOKIE", "ct_session")

    # Client-side capture bridge
    CAPTURE_SETTLE_MS = int(os.getenv("CAPTURE_SETTLE_MS", "3000"))
    CAPTURE_PARAM = os.getenv("CAPTURE_PARAM", "clickref")

    # Admin API key (link generation + affiliate stats)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

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
