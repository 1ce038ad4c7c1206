"""Startup validation: catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "kontrivibe-dev-secret-change-in-prod"


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    if is_prod and settings.JWT_SECRET == DEFAULT_JWT_SECRET:
        logger.critical("JWT_SECRET is still the default! Set a real secret for production.")
        sys.exit(1)

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * (restrict in production)")

    if not (settings.FAPSHI_API_USER and settings.FAPSHI_API_KEY):
        warnings.append("FAPSHI_API_USER / FAPSHI_API_KEY not set: payment initiation will be rejected by the provider")

    if settings.PAYMENT_LINK_TTL_MINUTES <= 0:
        warnings.append("PAYMENT_LINK_TTL_MINUTES must be positive: every pending attempt will look stale")

    for w in warnings:
        logger.warning("%s", w)

    if not warnings:
        logger.info("All startup checks passed")

    return warnings
