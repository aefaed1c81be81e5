"""
Scheduler - Decides when automatic scan batches run.

The automation settings row is the only schedule state. compute_next_run()
is a pure function of the settings and the current time; ScanScheduler
reads and writes the row and is driven by the periodic Celery tick, with
now injected so it can be tested without a clock.
"""

import logging
import threading
from datetime import timedelta
from typing import Any, Dict, Optional

from django.db import transaction
from django.utils import timezone

from scanner.exceptions import ValidationError
from scanner.models import AutomationSettings, ScanType, ScheduleFrequency

logger = logging.getLogger(__name__)

MONDAY = 0

# Fields that force next_scheduled_run to be recomputed when changed
SCHEDULE_FIELDS = {"enabled", "frequency", "hour_of_day"}

EDITABLE_FIELDS = {
    "enabled",
    "frequency",
    "hour_of_day",
    "batch_size",
    "retry_failed",
    "max_retries",
    "scan_type",
}


def _first_of_next_month(moment):
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1, day=1)
    return moment.replace(month=moment.month + 1, day=1)


def compute_next_run(settings, now):
    """
    Next automatic run strictly after now.

    Start from today at hour_of_day; if that moment is not after now,
    advance one period:
        daily     +1 day
        weekly    next Monday (today counts when it is Monday and the hour
                  is still ahead)
        biweekly  +14 days
        monthly   first day of next month

    Args:
        settings: object with frequency and hour_of_day (normally AutomationSettings)
        now: timezone-aware datetime

    Returns:
        timezone-aware datetime in now's timezone
    """
    frequency = settings.frequency
    candidate = now.replace(hour=settings.hour_of_day, minute=0, second=0, microsecond=0)

    if frequency == ScheduleFrequency.DAILY:
        if candidate <= now:
            candidate += timedelta(days=1)

    elif frequency == ScheduleFrequency.WEEKLY:
        candidate += timedelta(days=(MONDAY - candidate.weekday()) % 7)
        if candidate <= now:
            candidate += timedelta(days=7)

    elif frequency == ScheduleFrequency.BIWEEKLY:
        if candidate <= now:
            candidate += timedelta(days=14)

    elif frequency == ScheduleFrequency.MONTHLY:
        if candidate <= now:
            candidate = _first_of_next_month(candidate)

    else:
        raise ValidationError(f"Invalid frequency: {frequency}")

    return candidate


def _validate_int(field: str, value, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if not low <= value <= high:
        raise ValidationError(f"{field} must be between {low} and {high}")
    return value


def _validate_bool(field: str, value) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{field} must be a boolean")
    return value


def validate_settings_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a partial settings update.

    Raises:
        ValidationError: unknown field or out-of-range value
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")

    cleaned = {}
    for field, value in changes.items():
        if field in ("enabled", "retry_failed"):
            cleaned[field] = _validate_bool(field, value)
        elif field == "hour_of_day":
            cleaned[field] = _validate_int(field, value, 0, 23)
        elif field == "batch_size":
            cleaned[field] = _validate_int(field, value, 1, 50)
        elif field == "max_retries":
            cleaned[field] = _validate_int(field, value, 1, 10)
        elif field == "frequency":
            if value not in ScheduleFrequency.values:
                raise ValidationError(
                    f"frequency must be one of {', '.join(ScheduleFrequency.values)}"
                )
            cleaned[field] = value
        elif field == "scan_type":
            if value not in (ScanType.PERFORMANCE, ScanType.TECHNOLOGY):
                raise ValidationError("scan_type must be performance or technology")
            cleaned[field] = value
    return cleaned


class ScanScheduler:
    """
    Owner of the AutomationSettings row.

    Settings are read under a process-wide lock and written only through
    update_settings() and record_run().
    """

    _lock = threading.RLock()

    def __init__(self, clock=None):
        self._clock = clock or timezone.now

    def get_settings(self, now=None) -> AutomationSettings:
        """Current settings. Fills in a missing next run for enabled automation."""
        with self._lock:
            current = AutomationSettings.load()
            if current.enabled and current.next_scheduled_run is None:
                current.next_scheduled_run = compute_next_run(current, now or self._clock())
                current.save(update_fields=["next_scheduled_run", "updated_at"])
            return current

    def update_settings(self, **changes) -> AutomationSettings:
        """
        Apply a validated partial update.

        next_scheduled_run is recomputed whenever enabled, frequency or
        hour_of_day change, and cleared while automation is disabled.

        Raises:
            ValidationError: invalid field or value; nothing is written
        """
        cleaned = validate_settings_changes(changes)

        with self._lock, transaction.atomic():
            current = AutomationSettings.load()

            schedule_changed = any(
                getattr(current, field) != value
                for field, value in cleaned.items()
                if field in SCHEDULE_FIELDS
            )
            for field, value in cleaned.items():
                setattr(current, field, value)

            if not current.enabled:
                current.next_scheduled_run = None
            elif schedule_changed or current.next_scheduled_run is None:
                current.next_scheduled_run = compute_next_run(current, self._clock())

            current.save()

        logger.info(
            f"Automation settings updated ({', '.join(sorted(cleaned)) or 'no changes'}); "
            f"next run: {current.next_scheduled_run}"
        )
        return current

    def on_tick(self, now=None) -> bool:
        """
        True when automation is enabled and the next run is due.

        A True result must be followed by record_run(now).
        """
        now = now or self._clock()
        current = self.get_settings(now)

        if not current.enabled or current.next_scheduled_run is None:
            return False
        return now >= current.next_scheduled_run

    def record_run(self, now=None) -> AutomationSettings:
        """Stamp last_run and schedule the following run from now."""
        now = now or self._clock()
        with self._lock:
            current = AutomationSettings.load()
            current.last_run = now
            if current.enabled:
                current.next_scheduled_run = compute_next_run(current, now)
            current.save(update_fields=["last_run", "next_scheduled_run", "updated_at"])

        logger.info(f"Recorded scan run at {now}; next run: {current.next_scheduled_run}")
        return current


# Global instance for easy access
_scheduler: Optional[ScanScheduler] = None


def get_scheduler() -> ScanScheduler:
    """Get the global ScanScheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = ScanScheduler()
    return _scheduler
