"""
Telemetry Module
================

Observability for the ledger API and the sync worker.

Components:
- sentry.py: Error tracking (handled step failures, data integrity warnings)

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from profitledger.telemetry import init_observability

    init_observability()

Related modules:
- profitledger/main.py: Initializes observability on app creation
- profitledger/workers/arq_worker.py: Initializes observability on worker startup
"""

import logging

from profitledger.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def configure_logging(level: int = logging.INFO) -> None:
    """Process-wide log format for the API and the worker."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
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
    "configure_logging",
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
