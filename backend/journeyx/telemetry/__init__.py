"""
Telemetry Module
================

Observability for the attribution engine.

Components:
- sentry.py: Error tracking and performance monitoring

Environment Variables:
- SENTRY_DSN: Sentry project DSN (tracking is off without it)
- ENVIRONMENT: Environment name (production, staging, development)

Usage:
    from journeyx.telemetry import init_observability, capture_exception

    init_observability()

Related modules:
- journeyx/main.py: Initializes observability on startup
- journeyx/routers/attribution.py: Captures storage verification failures
- journeyx/workers/arq_worker.py: Captures job failures
"""

from journeyx.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization, e.g. {"sentry": False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
