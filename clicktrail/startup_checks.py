"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    # Critical: the follower can't run without at least one hop
    if settings.MAX_HOPS < 1:
        logger.critical("MAX_HOPS must be at least 1 (got %d)", settings.MAX_HOPS)
        sys.exit(1)

    if settings.HOP_RETRIES < 0:
        logger.critical("HOP_RETRIES cannot be negative (got %d)", settings.HOP_RETRIES)
        sys.exit(1)

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if not settings.API_BASE_URL:
        warnings.append("API_BASE_URL not set — tracking links will use the request host")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set — link generation and admin stats disabled")

    if settings.FALLBACK_URL == "https://example.com":
        warnings.append("FALLBACK_URL is the placeholder default — failed redirects land on example.com")

    if settings.HOP_TIMEOUT_SECONDS > 10:
        warnings.append(
            f"HOP_TIMEOUT_SECONDS={settings.HOP_TIMEOUT_SECONDS} — slow hops will hold visitors on the chain tracker"
        )

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
