"""
Sentry Error Tracking
=====================

Error tracking for the attribution API and the arq worker.

Related files:
- journeyx/main.py: Initializes Sentry, reports storage verification failures
- journeyx/workers/arq_worker.py: Job failures and slices with failed conversions

Environment Variables:
- SENTRY_DSN: Sentry project DSN (tracking is off without it)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier set by CI/CD

Conversion emails end up in storage keys (``multi_touch_attribution:<email>:<ts>``)
and job extras. ``scrub_event`` masks them before anything leaves the process.
"""

from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"[^\s:@%]+(?:@|%40)[^\s:/%]+\.[A-Za-z]{2,}")


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    return os.environ.get("SENTRY_DSN")


def mask_emails(value: Any) -> Any:
    """Replace anything that looks like an email (plain or percent-encoded) with a placeholder."""
    if isinstance(value, str):
        return EMAIL_RE.sub("<email>", value)
    if isinstance(value, dict):
        return {k: mask_emails(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [mask_emails(v) for v in value]
    return value


def scrub_event(event: dict, hint: dict) -> dict:
    """before_send hook: mask emails in extras and the message."""
    if "extra" in event:
        event["extra"] = mask_emails(event["extra"])
    if isinstance(event.get("message"), str):
        event["message"] = mask_emails(event["message"])
    return event


def init_sentry() -> bool:
    """
    Initialize Sentry SDK for the API and the worker.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set, error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                RedisIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            before_send=scrub_event,
            release=os.environ.get("RELEASE_VERSION"),
        )
        logger.info(f"[SENTRY] Initialized for {environment} environment")
        return True
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def _send(send, payload, extra: Optional[dict], **kwargs) -> None:
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            send(payload, **kwargs)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to send event: {e}")


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception, e.g. a job failure turned into {"success": False}.

    Without Sentry the exception is only logged.
    """
    if not sentry_sdk.is_initialized():
        logger.error(f"Exception (Sentry disabled): {exception}")
        return
    _send(sentry_sdk.capture_exception, exception, extra)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Report a message at the given level (debug, info, warning, error, fatal)."""
    if not sentry_sdk.is_initialized():
        logger.log(logging.getLevelName(level.upper()), f"Message (Sentry disabled): {message}")
        return
    _send(sentry_sdk.capture_message, message, extra, level=level)
