"""
Sentry Error Tracking
=====================

Centralized error tracking for the ingestion worker.

Related files:
- ytreporting/workers/arq_worker.py: Initializes Sentry on worker startup
- ytreporting/services/ingestion_scheduler.py: Captures per-job failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release tag set by CI/CD
"""

from __future__ import annotations

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from ytreporting.config import get_settings

logger = logging.getLogger(__name__)

_initialized = False


def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from settings (SENTRY_DSN)."""
    return get_settings().SENTRY_DSN


def init_sentry() -> bool:
    """
    Initialize Sentry SDK for the worker process.

    Should be called once during worker startup.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    global _initialized

    dsn = get_sentry_dsn()
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = get_settings().ENVIRONMENT

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.0,
            send_default_pii=False,  # Tokens and user ids stay out of events
            release=get_settings().RELEASE_VERSION,
        )
        _initialized = True
        logger.debug("[SENTRY] Initialized for %s environment", environment)
        return True

    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Capture a handled exception to Sentry.

    Use this for exceptions that are caught so the sweep can continue but
    should still be tracked.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        try:
            ingest_reports_for_job(db, client, job)
        except YouTubeApiError as e:
            capture_exception(e, extra={"operation": "ingest_job", "job_id": job.job_id})
    """
    if not _initialized:
        logger.debug("Exception (Sentry disabled): %s", exception)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry.

    Use this for notable events that aren't exceptions, e.g. a report file
    that exhausted its retry budget.
    """
    if not _initialized:
        logger.log(
            logging.getLevelName(level.upper()),
            "Message (Sentry disabled): %s", message,
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
