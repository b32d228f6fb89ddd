"""App settings: loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///entitlements.db")

    # Auth (bearer tokens issued by the account service, HS256)
    JWT_SECRET = os.getenv("JWT_SECRET", "cookcam-dev-secret-change-in-prod")

    # Admin API key (reconciliation trigger, Play deferrals)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Apple IAP (legacy verifyReceipt + Server Notifications V2)
    APPLE_SHARED_SECRET = os.getenv("APPLE_SHARED_SECRET", "")
    APPLE_BUNDLE_ID = os.getenv("APPLE_BUNDLE_ID", "com.cookcam.app")
    APPLE_VERIFY_URL_PRODUCTION = os.getenv(
        "APPLE_VERIFY_URL_PRODUCTION", "https://buy.itunes.apple.com/verifyReceipt"
    )
    APPLE_VERIFY_URL_SANDBOX = os.getenv(
        "APPLE_VERIFY_URL_SANDBOX", "https://sandbox.itunes.apple.com/verifyReceipt"
    )

    # Google Play Developer API
    GOOGLE_PLAY_PACKAGE_NAME = os.getenv("GOOGLE_PLAY_PACKAGE_NAME", "com.cookcam.app")
    # Service account JSON key (inline JSON or path)
    GOOGLE_SERVICE_ACCOUNT_KEY = os.getenv("GOOGLE_SERVICE_ACCOUNT_KEY", "")
    GOOGLE_SERVICE_ACCOUNT_KEY_FILE = os.getenv("GOOGLE_SERVICE_ACCOUNT_KEY_FILE", "")

    # Store HTTP calls
    STORE_HTTP_TIMEOUT = float(os.getenv("STORE_HTTP_TIMEOUT", "5"))
    STORE_MAX_ATTEMPTS = int(os.getenv("STORE_MAX_ATTEMPTS", "3"))
    STORE_BACKOFF_BASE = float(os.getenv("STORE_BACKOFF_BASE", "0.5"))
    STORE_BACKOFF_MAX = float(os.getenv("STORE_BACKOFF_MAX", "5"))

    # Lifecycle
    GRACE_PERIOD_DAYS = int(os.getenv("GRACE_PERIOD_DAYS", "7"))

    # Reconciliation job
    RECONCILE_INTERVAL_HOURS = int(os.getenv("RECONCILE_INTERVAL_HOURS", "24"))
    RECONCILE_CONCURRENCY = int(os.getenv("RECONCILE_CONCURRENCY", "5"))

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
