"""
Tests for the scan pipeline models.

Tests cover:
1. Business defaults and scan_url
2. ScanQueueItem defaults and duration
3. AutomationSettings singleton
4. QuotaUsage derived values and uniqueness
"""

from datetime import timedelta

import pytest
from django.db import IntegrityError

from scanner.models import (
    AutomationSettings,
    Business,
    BusinessStatus,
    QuotaUsage,
    ScanPriority,
    ScanQueueItem,
    ScanStatus,
)


@pytest.mark.django_db
class TestBusiness:
    """Tests for the Business model."""

    def test_defaults(self):
        business = Business.objects.create(name="Acme")

        assert business.status == BusinessStatus.DISCOVERED
        assert business.source == "manual"
        assert business.technologies == []
        assert str(business) == "Acme"

    @pytest.mark.parametrize("website,expected", [
        ("acme.com", "https://acme.com"),
        ("http://acme.com", "http://acme.com"),
        ("", None),
        (None, None),
    ])
    def test_scan_url(self, website, expected):
        assert Business(name="Acme", website=website).scan_url == expected

    def test_save_bumps_updated_at(self, make_business):
        business = make_business()
        before = business.updated_at

        business.phone = "555-0100"
        business.save()

        assert business.updated_at >= before


@pytest.mark.django_db
class TestScanQueueItem:
    """Tests for the ScanQueueItem model."""

    def test_defaults(self, make_business):
        item = ScanQueueItem.objects.create(target=make_business())

        assert item.status == ScanStatus.PENDING
        assert item.priority == ScanPriority.MEDIUM
        assert item.attempts == 0
        assert item.result == {}

    def test_duration_seconds(self, make_business, fixed_now):
        item = ScanQueueItem(
            target=make_business(),
            started_at=fixed_now,
            completed_at=fixed_now + timedelta(seconds=42),
        )

        assert item.duration_seconds == 42.0
        assert ScanQueueItem(target=item.target).duration_seconds is None


@pytest.mark.django_db
class TestAutomationSettings:
    """Tests for the settings singleton."""

    def test_load_creates_single_row(self):
        first = AutomationSettings.load()
        second = AutomationSettings.load()

        assert first.pk == second.pk == AutomationSettings.SINGLETON_ID
        assert AutomationSettings.objects.count() == 1
        assert first.enabled is False
        assert first.batch_size == 5

    def test_str(self):
        AutomationSettings.load()

        current = AutomationSettings.objects.get(pk=AutomationSettings.SINGLETON_ID)
        assert str(current) == "Scan automation (disabled, daily at 03:00)"


@pytest.mark.django_db
class TestQuotaUsage:
    """Tests for the QuotaUsage model."""

    def test_remaining_and_percentage(self):
        usage = QuotaUsage(provider="pagespeed", period="2025-06", used=30, limit=40)

        assert usage.remaining == 10
        assert usage.usage_percentage == 75.0
        assert str(usage) == "pagespeed (2025-06): 30/40"

    def test_unique_per_provider_and_period(self):
        QuotaUsage.objects.create(provider="pagespeed", period="2025-06")

        with pytest.raises(IntegrityError):
            QuotaUsage.objects.create(provider="pagespeed", period="2025-06")
