"""
Telemetry Module
================

Error reporting for the sync workers.

Components:
- sentry.py: Error tracking for scheduled and manual refresh jobs

Environment Variables:
- SENTRY_DSN: Sentry project DSN (reporting is disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)

Usage:
    from adsync.telemetry import init_sentry, capture_exception

    init_sentry()  # once, at worker startup

Related modules:
- adsync/workers/arq_worker.py: Initializes Sentry on startup, reports job failures
"""

from adsync.telemetry.sentry import (
    init_sentry,
    set_user_context,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "set_user_context",
    "capture_exception",
    "capture_message",
]
