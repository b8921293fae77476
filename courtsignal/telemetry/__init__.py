"""
Telemetry Module
================

Error tracking for the courtsignal backend (Sentry).

Usage:
    from courtsignal.telemetry import init_sentry, capture_exception
"""

from courtsignal.telemetry.sentry import init_sentry, capture_exception

__all__ = [
    "init_sentry",
    "capture_exception",
]
