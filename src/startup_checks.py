"""Startup validation: catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings
from src.services.google_auth import load_service_account_key

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "cookcam-dev-secret-change-in-prod"


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    # Critical: JWT secret must be changed in production
    if is_prod and settings.JWT_SECRET == DEFAULT_JWT_SECRET:
        logger.critical("JWT_SECRET is still the default! Set a real secret for production.")
        sys.exit(1)

    # Critical: CORS should not be * in production
    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to *: restrict in production")

    if not settings.APPLE_SHARED_SECRET:
        warnings.append("APPLE_SHARED_SECRET not set: Apple auto-renewable receipts will fail (21004)")

    sa_key = load_service_account_key(
        settings.GOOGLE_SERVICE_ACCOUNT_KEY, settings.GOOGLE_SERVICE_ACCOUNT_KEY_FILE
    )
    if not sa_key:
        warnings.append("Google service account not configured: Play validation disabled")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set: admin reconciliation routes disabled")

    if settings.RECONCILE_CONCURRENCY < 1:
        warnings.append("RECONCILE_CONCURRENCY < 1: reconciliation will run one at a time")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
