"""
Telemetry Module
================

Observability for the ingestion worker.

Components:
- sentry.py: Error tracking

Usage:
    from ytreporting.telemetry import init_sentry, capture_exception

    init_sentry()  # once, on worker startup
"""

from ytreporting.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
