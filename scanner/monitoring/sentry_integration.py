"""
Sentry error tracking for the scan pipeline.

- Breadcrumbs for scan and discovery context (provider, target, item)
- Filters sensitive data (API keys, auth headers) before it leaves the process
- Captures scan errors and operational alerts (quota exhaustion, total
  discovery failure)

The SDK is initialised in settings/base.py when SENTRY_DSN is set; without a
DSN every call here is a cheap no-op inside sentry_sdk itself.

Usage:
    from scanner.monitoring import capture_scan_error

    try:
        outcome = processor.process_item(item)
    except Exception as e:
        capture_scan_error(error=e, provider="pagespeed", target=item.target)
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk

logger = logging.getLogger(__name__)

# Sensitive fields to filter from Sentry events
SENSITIVE_FIELDS = {
    "api_key",
    "apikey",
    "api-key",
    "key",
    "authorization",
    "auth",
    "password",
    "secret",
    "token",
    "cookie",
}


def _filter_sensitive_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values whose key names look sensitive, recursing into dicts.

    Args:
        data: Dictionary potentially containing sensitive data

    Returns:
        Dictionary with sensitive values replaced
    """
    if not isinstance(data, dict):
        return data

    filtered = {}
    for key, value in data.items():
        key_lower = str(key).lower()

        if any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
            filtered[key] = "[Filtered]"
        elif isinstance(value, dict):
            filtered[key] = _filter_sensitive_data(value)
        else:
            filtered[key] = value

    return filtered


def add_scan_breadcrumb(
    provider: str,
    message: str = "Scan operation",
    target_id: Optional[str] = None,
    level: str = "info",
    extra_data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Add a breadcrumb for scan or discovery context.

    Args:
        provider: Provider adapter name
        message: Description of the operation
        target_id: Business id being scanned, if any
        level: Log level (info, warning, error)
        extra_data: Additional context data (filtered)
    """
    breadcrumb_data = {"provider": provider}
    if target_id:
        breadcrumb_data["target_id"] = str(target_id)
    if extra_data:
        breadcrumb_data.update(_filter_sensitive_data(extra_data))

    try:
        sentry_sdk.add_breadcrumb(
            category="scan",
            message=message,
            level=level,
            data=breadcrumb_data,
        )
    except Exception as e:
        logger.warning(f"Failed to add Sentry breadcrumb: {e}")


def capture_scan_error(
    error: Exception,
    provider: Optional[str] = None,
    target=None,
    item_id: Optional[str] = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Capture an unexpected scan error with pipeline context.

    Args:
        error: The exception that occurred
        provider: Provider adapter name
        target: Business instance (optional)
        item_id: ScanQueueItem id (optional)
        extra_context: Additional context (filtered for sensitive data)
    """
    target_id = str(target.id) if target is not None else None

    add_scan_breadcrumb(
        provider=provider or "unknown",
        message=f"Error: {type(error).__name__}",
        target_id=target_id,
        level="error",
        extra_data=extra_context,
    )

    try:
        with sentry_sdk.push_scope() as scope:
            scope.set_tag("scanner.provider", provider or "unknown")
            if target_id:
                scope.set_extra("target_id", target_id)
                scope.set_extra("target_url", getattr(target, "scan_url", None))
            if item_id:
                scope.set_extra("scan_item_id", str(item_id))
            if extra_context:
                scope.set_extra("scan_context", _filter_sensitive_data(extra_context))

            sentry_sdk.capture_exception(error)

    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")


def capture_alert(
    message: str,
    alert_type: str,
    level: str = "warning",
    provider: Optional[str] = None,
    extra_data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Capture an operational alert message.

    Args:
        message: Alert message
        alert_type: quota_exhausted, discovery_failure, stale_recovery
        level: Severity level (warning, error)
        provider: Provider the alert concerns, if any
        extra_data: Additional alert data (filtered)
    """
    try:
        with sentry_sdk.push_scope() as scope:
            scope.set_tag("alert.type", alert_type)
            if provider:
                scope.set_tag("scanner.provider", provider)
            if extra_data:
                scope.set_extra("alert_data", _filter_sensitive_data(extra_data))

            sentry_sdk.capture_message(message, level=level)

    except Exception as e:
        logger.warning(f"Failed to capture alert to Sentry: {e}")
