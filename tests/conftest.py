"""
Pytest configuration and fixtures for the scan pipeline test suite.
"""

from datetime import datetime, timezone as dt_timezone

import pytest

from scanner.providers.base import DiscoverySource, ProviderAdapter, Success


# Monday 2 June 2025, 12:00 UTC
FIXED_NOW = datetime(2025, 6, 2, 12, 0, tzinfo=dt_timezone.utc)


@pytest.fixture(scope="session")
def django_db_setup(django_db_blocker):
    """Configure the test database and run migrations."""
    from django.core.management import call_command

    with django_db_blocker.unblock():
        call_command("migrate", "--run-syncdb", verbosity=0)


@pytest.fixture
def api_client():
    """Create a test API client."""
    from rest_framework.test import APIClient

    return APIClient()


@pytest.fixture
def authenticated_client(api_client, db):
    """API client logged in as a staff user."""
    from django.contrib.auth import get_user_model

    user = get_user_model().objects.create_user(
        username="operator", password="operator-pass", is_staff=True
    )
    api_client.force_authenticate(user=user)
    return api_client


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def make_business(db):
    """Factory creating Business rows."""
    from scanner.models import Business

    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        defaults = {
            "name": f"Business {counter['n']}",
            "website": f"business{counter['n']}.example.com",
        }
        defaults.update(kwargs)
        return Business.objects.create(**defaults)

    return _make


@pytest.fixture
def automation(db):
    """Enabled automation settings with a batch of 10 and 3 retries."""
    from scanner.models import AutomationSettings

    settings = AutomationSettings.load()
    settings.enabled = True
    settings.batch_size = 10
    settings.retry_failed = True
    settings.max_retries = 3
    settings.scan_type = "performance"
    settings.save()
    return settings


class ScriptedAdapter(ProviderAdapter):
    """
    Scan adapter returning scripted results.

    script maps a target website to a result or to a list of results consumed
    one per call; unscripted targets succeed with a score of 90.
    """

    name = "fake"
    scan_type = "performance"
    metered = True

    def __init__(self, script=None, metered=True):
        self.script = script or {}
        self.metered = metered
        self.calls = []

    def attempt(self, target):
        self.calls.append(target.website)
        scripted = self.script.get(target.website)
        if isinstance(scripted, list):
            return scripted.pop(0)
        if scripted is not None:
            return scripted
        return Success({"score": 90, "report_url": f"https://report.example/{target.website}"})

    def result_fields(self, data, scanned_at):
        return {
            "performance_score": data["score"],
            "performance_report_url": data["report_url"],
            "performance_provider": self.name,
            "last_performance_scan_at": scanned_at,
        }


class ScriptedSource(DiscoverySource):
    """
    Discovery source with scripted attempt() results.

    results is a single result returned on every call, a list consumed one
    per call (the last entry repeats), or a callable(variant, query).
    """

    def __init__(self, name, results, metered=False, variant_count=1):
        self.name = name
        self.metered = metered
        self.results = results
        self.variant_count = variant_count
        self.calls = []

    def variants(self, query):
        return [f"https://{self.name}.example/{i}?q={query}" for i in range(self.variant_count)]

    def attempt(self, variant, query):
        if not self.take_call():
            return self.quota_refused()
        self.calls.append(variant)
        if callable(self.results):
            return self.results(variant, query)
        if isinstance(self.results, list):
            return self.results.pop(0) if len(self.results) > 1 else self.results[0]
        return self.results


@pytest.fixture
def scripted_adapter():
    return ScriptedAdapter


@pytest.fixture
def scripted_source():
    return ScriptedSource
