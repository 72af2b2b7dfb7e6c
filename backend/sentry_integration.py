"""
SOA Reconciliation - Sentry Integration

Error tracking and performance monitoring with Sentry.
"""

import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

# Keys redacted from events before they leave the process
SENSITIVE_KEYS = [
    "password", "token", "secret", "api_key", "api-key", "authorization",
    "jwt", "access_token", "refresh_token", "cookie",
]


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    sample_rate: float = 1.0,
    traces_sample_rate: float = 0.1,
) -> bool:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN; tracking stays off when empty
        environment: Environment name (production, staging, development)
        release: Release version
        sample_rate: Error sampling rate (0.0 to 1.0)
        traces_sample_rate: Performance tracing sample rate

    Returns:
        True if Sentry was initialized, False otherwise
    """
    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            sample_rate=sample_rate,
            traces_sample_rate=traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR
                ),
            ],
            send_default_pii=False,
            before_send=filter_sensitive_data,
            ignore_errors=[
                ConnectionResetError,
                BrokenPipeError,
            ],
        )

        sentry_sdk.set_tag("service", "soa-reconciliation")
        logger.info(f"Sentry initialized for environment: {environment}")
        return True

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if any(s in str(key).lower() for s in SENSITIVE_KEYS):
                result[key] = "[REDACTED]"
            else:
                result[key] = _redact(item)
        return result
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Filter sensitive data from Sentry events.

    Covers request headers (including X-Internal-Api-Key), request bodies
    and extra data.
    """
    request = event.get("request")
    if isinstance(request, dict):
        if "headers" in request:
            request["headers"] = _redact(request["headers"])
        if "data" in request:
            request["data"] = _redact(request["data"])

    if "extra" in event:
        event["extra"] = _redact(event["extra"])

    return event


def set_reconciliation_scope(
    vendor_id: Optional[str] = None,
    statement_id: Optional[str] = None,
    actor_id: Optional[str] = None
):
    """Tag the current scope so errors can be grouped by vendor and statement."""
    if vendor_id:
        sentry_sdk.set_tag("vendor_id", vendor_id)
    if statement_id:
        sentry_sdk.set_tag("statement_id", statement_id)
    if actor_id:
        sentry_sdk.set_user({"id": actor_id})


def capture_exception(exception: Exception, **kwargs) -> Optional[str]:
    """
    Capture an exception to Sentry.

    Returns:
        Event ID if captured, None otherwise
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in kwargs.items():
                scope.set_extra(key, value)
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"Failed to capture exception to Sentry: {e}")
        return None
