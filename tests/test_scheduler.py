"""
Tests for the scan Scheduler.

Tests cover:
1. compute_next_run for every frequency, always strictly after now
2. Weekly runs always land on a Monday at hour_of_day
3. on_tick gating and record_run self-healing
4. Settings validation and recomputation on update
"""

from datetime import datetime, timedelta, timezone as dt_timezone
from types import SimpleNamespace

import pytest

from scanner.exceptions import ValidationError
from scanner.models import AutomationSettings
from scanner.services.scheduler import ScanScheduler, compute_next_run


def utc(*args):
    return datetime(*args, tzinfo=dt_timezone.utc)


def schedule(frequency, hour_of_day):
    return SimpleNamespace(frequency=frequency, hour_of_day=hour_of_day)


class TestComputeNextRun:
    """Tests for the pure next-run computation."""

    def test_daily_after_hour_moves_to_tomorrow(self):
        result = compute_next_run(schedule("daily", 3), utc(2024, 1, 1, 5, 0))

        assert result == utc(2024, 1, 2, 3, 0)

    def test_daily_before_hour_stays_today(self):
        result = compute_next_run(schedule("daily", 3), utc(2024, 1, 1, 1, 30))

        assert result == utc(2024, 1, 1, 3, 0)

    def test_exactly_at_hour_is_not_after_now(self):
        now = utc(2024, 1, 1, 3, 0)

        assert compute_next_run(schedule("daily", 3), now) == utc(2024, 1, 2, 3, 0)

    def test_weekly_lands_on_next_monday(self):
        # Wednesday 2024-01-03
        result = compute_next_run(schedule("weekly", 2), utc(2024, 1, 3, 10, 0))

        assert result == utc(2024, 1, 8, 2, 0)
        assert result.weekday() == 0

    def test_weekly_on_monday_before_hour_is_today(self):
        result = compute_next_run(schedule("weekly", 9), utc(2024, 1, 8, 6, 0))

        assert result == utc(2024, 1, 8, 9, 0)

    def test_weekly_on_monday_after_hour_is_next_week(self):
        result = compute_next_run(schedule("weekly", 9), utc(2024, 1, 8, 10, 0))

        assert result == utc(2024, 1, 15, 9, 0)

    def test_biweekly_adds_fourteen_days(self):
        result = compute_next_run(schedule("biweekly", 4), utc(2024, 1, 10, 8, 0))

        assert result == utc(2024, 1, 24, 4, 0)

    def test_monthly_moves_to_first_of_next_month(self):
        result = compute_next_run(schedule("monthly", 0), utc(2024, 1, 31, 12, 0))

        assert result == utc(2024, 2, 1, 0, 0)

    def test_monthly_rolls_over_year(self):
        result = compute_next_run(schedule("monthly", 6), utc(2024, 12, 15, 7, 0))

        assert result == utc(2025, 1, 1, 6, 0)

    def test_unknown_frequency_rejected(self):
        with pytest.raises(ValidationError):
            compute_next_run(schedule("hourly", 3), utc(2024, 1, 1))

    @pytest.mark.parametrize("frequency", ["daily", "weekly", "biweekly", "monthly"])
    def test_always_strictly_after_now(self, frequency):
        start = utc(2024, 1, 1, 0, 0)
        for hours in range(0, 24 * 40, 7):
            now = start + timedelta(hours=hours, minutes=13)
            for hour_of_day in (0, 3, 12, 23):
                result = compute_next_run(schedule(frequency, hour_of_day), now)
                assert result > now
                assert result.hour == hour_of_day
                assert result.minute == 0
                if frequency == "weekly":
                    assert result.weekday() == 0
                    assert result - now <= timedelta(days=7)


@pytest.mark.django_db
class TestScanScheduler:
    """Tests for tick gating and run recording."""

    def test_disabled_never_runs(self, fixed_now):
        scheduler = ScanScheduler(clock=lambda: fixed_now)

        assert scheduler.on_tick(fixed_now + timedelta(days=30)) is False

    def test_enabling_computes_next_run(self, fixed_now):
        scheduler = ScanScheduler(clock=lambda: fixed_now)

        current = scheduler.update_settings(enabled=True, frequency="daily", hour_of_day=3)

        assert current.next_scheduled_run == utc(2025, 6, 3, 3, 0)

    def test_tick_true_once_due_then_record_run_reschedules(self, fixed_now):
        scheduler = ScanScheduler(clock=lambda: fixed_now)
        scheduler.update_settings(enabled=True, frequency="daily", hour_of_day=3)

        assert scheduler.on_tick(utc(2025, 6, 3, 2, 59)) is False

        due = utc(2025, 6, 3, 3, 5)
        assert scheduler.on_tick(due) is True

        current = scheduler.record_run(due)
        assert current.last_run == due
        assert current.next_scheduled_run == utc(2025, 6, 4, 3, 0)
        assert scheduler.on_tick(due) is False

    def test_missed_ticks_produce_one_run(self, fixed_now):
        scheduler = ScanScheduler(clock=lambda: fixed_now)
        scheduler.update_settings(enabled=True, frequency="daily", hour_of_day=3)

        late = utc(2025, 6, 10, 15, 0)
        assert scheduler.on_tick(late) is True
        scheduler.record_run(late)

        assert scheduler.on_tick(late + timedelta(minutes=5)) is False
        assert AutomationSettings.load().next_scheduled_run == utc(2025, 6, 11, 3, 0)

    def test_disabling_clears_next_run(self, fixed_now):
        scheduler = ScanScheduler(clock=lambda: fixed_now)
        scheduler.update_settings(enabled=True)

        current = scheduler.update_settings(enabled=False)

        assert current.next_scheduled_run is None

    def test_frequency_change_recomputes(self, fixed_now):
        scheduler = ScanScheduler(clock=lambda: fixed_now)
        scheduler.update_settings(enabled=True, frequency="daily", hour_of_day=3)

        current = scheduler.update_settings(frequency="monthly")

        assert current.next_scheduled_run == utc(2025, 7, 1, 3, 0)

    def test_non_schedule_change_keeps_next_run(self, fixed_now):
        scheduler = ScanScheduler(clock=lambda: fixed_now)
        first = scheduler.update_settings(enabled=True, frequency="weekly", hour_of_day=1)

        current = scheduler.update_settings(batch_size=25)

        assert current.batch_size == 25
        assert current.next_scheduled_run == first.next_scheduled_run


@pytest.mark.django_db
class TestSettingsValidation:
    """Out-of-range values are rejected and nothing is written."""

    @pytest.mark.parametrize("changes", [
        {"batch_size": 0},
        {"batch_size": 51},
        {"max_retries": 0},
        {"max_retries": 11},
        {"hour_of_day": 24},
        {"hour_of_day": -1},
        {"frequency": "hourly"},
        {"enabled": "yes"},
        {"batch_size": "10"},
        {"scan_type": "discovery"},
        {"colour": "blue"},
    ])
    def test_invalid_changes_rejected(self, changes):
        scheduler = ScanScheduler()

        with pytest.raises(ValidationError):
            scheduler.update_settings(**changes)

    def test_partial_invalid_update_writes_nothing(self):
        scheduler = ScanScheduler()

        with pytest.raises(ValidationError):
            scheduler.update_settings(batch_size=20, max_retries=99)

        assert AutomationSettings.load().batch_size != 20

    @pytest.mark.parametrize("changes", [
        {"batch_size": 1},
        {"batch_size": 50},
        {"max_retries": 10},
        {"hour_of_day": 0},
        {"hour_of_day": 23},
        {"frequency": "biweekly"},
        {"scan_type": "technology"},
    ])
    def test_boundary_values_accepted(self, changes):
        current = ScanScheduler().update_settings(**changes)

        for field, value in changes.items():
            assert getattr(current, field) == value
