"""
Monitoring and alerting for the scan pipeline.

- Sentry error tracking with scan context
- Alerts for quota exhaustion, total discovery failure and stale recovery
"""

from .sentry_integration import add_scan_breadcrumb, capture_alert, capture_scan_error

__all__ = [
    "add_scan_breadcrumb",
    "capture_alert",
    "capture_scan_error",
]
