"""
ComplyBook Reconciliation - Sentry Integration

Error tracking for the reconciliation API. Reconciliation errors (validation,
conflicts, closed sessions) are normal outcomes returned to the caller and
are never reported; only unexpected failures reach Sentry.
"""

import logging
import os
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from reconciliation.errors import ReconciliationError

logger = logging.getLogger(__name__)

_enabled = False

REDACTED = "[REDACTED]"

# Substrings of keys whose values never leave the process
SENSITIVE_KEYS = (
    "password", "token", "secret", "api_key", "authorization",
    "hmac", "cookie", "account_number", "database_url",
)


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    traces_sample_rate: float = 0.1,
) -> bool:
    """
    Enable Sentry when a DSN is available.

    Returns:
        True if Sentry is now active
    """
    global _enabled

    dsn = dsn or os.environ.get("SENTRY_DSN", "")
    if not dsn:
        logger.info("SENTRY_DSN not set; error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release or os.environ.get("GIT_SHA", "unknown"),
            traces_sample_rate=traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            send_default_pii=False,
            before_send=before_send,
        )
    except Exception as e:
        logger.error(f"Sentry initialization failed: {e}")
        return False

    _enabled = True
    logger.info(f"Sentry enabled for environment: {environment}")
    return True


def redact(value: Any) -> Any:
    """Recursively replace values of sensitive keys."""
    if isinstance(value, dict):
        return {
            key: REDACTED if any(s in str(key).lower() for s in SENSITIVE_KEYS) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Drop expected reconciliation errors and scrub the rest."""
    exc_info = hint.get("exc_info") if hint else None
    if exc_info and isinstance(exc_info[1], ReconciliationError):
        return None

    request = event.get("request")
    if request:
        for section in ("headers", "data", "cookies"):
            if section in request:
                request[section] = redact(request[section])

    if "extra" in event:
        event["extra"] = redact(event["extra"])

    return event


def capture_exception(exception: Exception, **context) -> Optional[str]:
    """
    Report an unexpected exception with request context attached as extras.

    Returns:
        Sentry event id, or None when Sentry is disabled
    """
    if not _enabled:
        return None

    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(exception)


def set_tag(key: str, value: str):
    if _enabled:
        sentry_sdk.set_tag(key, value)
